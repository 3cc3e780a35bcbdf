import json
from pathlib import Path
import sys
from types import SimpleNamespace

import pytest


projectRoot = Path(__file__).resolve().parents[1]
if str(projectRoot) not in sys.path:
    sys.path.insert(0, str(projectRoot))

from printbridge import logutil
from printbridge.models import PrinterDescriptor


class FakeTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerRecorder:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def intervals(self):
        return [timer.interval for timer in self.timers]

    @property
    def active(self):
        return [timer for timer in self.timers if timer.started and not timer.cancelled]


class FakeMqttClient:
    def __init__(self, descriptor=None):
        self.descriptor = descriptor
        self.userdata = None
        self.on_connect = None
        self.on_disconnect = None
        self.on_connect_fail = None
        self.on_message = None
        self.connectCalls = []
        self.subscriptions = []
        self.published = []
        self.loopStarted = False
        self.loopStopped = False
        self.disconnected = False
        self.publishRc = 0

    def user_data_set(self, userdata):
        self.userdata = userdata

    def connect_async(self, host, port, keepalive=60):
        self.connectCalls.append((host, port, keepalive))

    def loop_start(self):
        self.loopStarted = True

    def loop_stop(self):
        self.loopStopped = True

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic):
        self.subscriptions.append(topic)

    def publish(self, topic, payload):
        self.published.append((topic, json.loads(payload)))
        return SimpleNamespace(rc=self.publishRc)

    def simulateConnect(self, failure=False):
        self.on_connect(self, self.userdata, {}, SimpleNamespace(is_failure=failure), None)

    def simulateDisconnect(self, failure=True):
        self.on_disconnect(self, self.userdata, {}, SimpleNamespace(is_failure=failure), None)

    def simulateConnectFail(self):
        self.on_connect_fail(self, self.userdata)

    def simulateMessage(self, payload, topic=None):
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        serial = self.userdata.serial if self.userdata is not None else "unknown"
        message = SimpleNamespace(topic=topic or f"device/{serial}/report", payload=payload)
        self.on_message(self, self.userdata, message)


class MqttClientRecorder:
    def __init__(self):
        self.clients = []

    def __call__(self, descriptor):
        client = FakeMqttClient(descriptor)
        self.clients.append(client)
        return client

    @property
    def last(self):
        return self.clients[-1]


class FakeSocketClient:
    def __init__(self):
        self.handlers = {}
        self.emitted = []
        self.connected = False
        self.connectCalls = []
        self.connectError = None
        self.disconnectCalls = 0

    def on(self, event, handler=None):
        self.handlers[event] = handler

    def connect(self, url, **kwargs):
        self.connectCalls.append((url, kwargs))
        if self.connectError is not None:
            raise self.connectError
        self.connected = True

    def disconnect(self):
        self.disconnectCalls += 1
        self.connected = False

    def emit(self, event, data=None):
        self.emitted.append((event, data))

    def trigger(self, event, *args):
        return self.handlers[event](*args)


def makeDescriptor(serial="01P00A000000001", model="P1S", host="192.168.1.50", accessCode="12345678", **overrides):
    values = dict(
        serial=serial,
        name=overrides.pop("name", f"Printer {serial[-3:]}"),
        model=model,
        host=host,
        accessCode=accessCode,
        printerId=overrides.pop("printerId", f"id-{serial[-3:]}"),
    )
    values.update(overrides)
    return PrinterDescriptor(**values)


@pytest.fixture(autouse=True)
def resetRateLimits():
    logutil.resetRateLimit("")
    yield
    logutil.resetRateLimit("")


@pytest.fixture
def timerRecorder():
    return TimerRecorder()


@pytest.fixture
def mqttClients():
    return MqttClientRecorder()
