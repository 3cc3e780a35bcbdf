"""End-to-end wiring of the bridge with fake transports."""

import json

import pytest

from printbridge.app import Bridge, executableSearchDirs, locateExecutable
from printbridge.config_manager import BridgeSettings, ConfigManager
from printbridge.cloud_channel import STATUS_EVENT

from conftest import FakeSocketClient, makeDescriptor


class FakeStream:
    def __init__(self, serial, host, accessCode):
        self.serial = serial
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


@pytest.fixture
def bridge(tmp_path, mqttClients, timerRecorder):
    settings = BridgeSettings(dataDirectory=tmp_path, gatewayPort=8765)
    config = ConfigManager(tmp_path / "config.json")
    sio = FakeSocketClient()
    instance = Bridge(
        settings,
        config,
        "vfk_test",
        executableLocator=lambda name, settings: None,
        mqttClientFactory=mqttClients,
        socketClientFactory=lambda: sio,
        localIp="192.168.1.10",
    )
    instance.cameras._streamFactory = FakeStream
    instance.connections._timerFactory = timerRecorder
    instance.channel.connectOnce()
    instance.sio = sio
    yield instance
    instance.shutdown()


def statusEvents(bridge):
    return [data for event, data in bridge.sio.emitted if event == STATUS_EVENT]


def test_missing_executables_disable_relay_and_tunnel(bridge):
    assert not bridge.relay.available
    assert not bridge.tunnel.available


def test_connected_printer_publishes_camera_url(bridge, mqttClients):
    descriptor = makeDescriptor(model="P1S")
    bridge.addPrinter(descriptor)

    mqttClients.last.simulateConnect()

    assert statusEvents(bridge) == [
        {
            "printerId": descriptor.printerId,
            "serialNumber": descriptor.serial,
            "cameraUrl": f"http://192.168.1.10:8765/stream/{descriptor.serial}",
        }
    ]


def test_relay_model_without_relay_gets_no_camera(bridge, mqttClients):
    bridge.addPrinter(makeDescriptor(serial="0948BB000000001", model="H2D"))

    mqttClients.last.simulateConnect()

    assert statusEvents(bridge) == []


def test_reports_are_forwarded_when_they_change(bridge, mqttClients, tmp_path):
    descriptor = makeDescriptor(model="A1")
    bridge.addPrinter(descriptor)
    client = mqttClients.last
    client.simulateConnect()
    bridge.sio.emitted.clear()

    report = {"print": {"gcode_state": "RUNNING", "mc_percent": 12, "nozzle_temper": 215.0}}
    client.simulateMessage(report)
    client.simulateMessage(report)

    statuses = statusEvents(bridge)
    assert len(statuses) == 1
    assert statuses[0]["serialNumber"] == descriptor.serial
    assert statuses[0]["online"] is True
    stored = json.loads((tmp_path / "logs" / "latest-status.json").read_text())
    assert descriptor.serial in stored["printers"]


def test_lost_connection_reports_offline(bridge, mqttClients, timerRecorder):
    descriptor = makeDescriptor()
    bridge.addPrinter(descriptor)
    client = mqttClients.last
    client.simulateConnect()
    bridge.sio.emitted.clear()

    client.simulateDisconnect()

    assert statusEvents(bridge) == [
        {"printerId": descriptor.printerId, "serialNumber": descriptor.serial, "online": False}
    ]
    assert timerRecorder.intervals == [5]


def test_tunnel_url_is_saved_and_camera_urls_reissued(bridge, mqttClients, tmp_path):
    descriptor = makeDescriptor(model="P1P")
    bridge.addPrinter(descriptor)
    mqttClients.last.simulateConnect()
    bridge.sio.emitted.clear()

    bridge._handleTunnelUrl("https://gentle-wind.trycloudflare.com")

    assert ConfigManager(tmp_path / "config.json").get_tunnel_url() == "https://gentle-wind.trycloudflare.com"
    assert statusEvents(bridge) == [
        {
            "printerId": descriptor.printerId,
            "serialNumber": descriptor.serial,
            "cameraUrl": f"https://gentle-wind.trycloudflare.com/stream/{descriptor.serial}",
        }
    ]


def test_saved_tunnel_url_is_used_on_start(tmp_path, mqttClients, timerRecorder):
    config = ConfigManager(tmp_path / "config.json")
    config.set_tunnel_url("https://earlier-run.trycloudflare.com")
    instance = Bridge(
        BridgeSettings(dataDirectory=tmp_path),
        config,
        "vfk_test",
        executableLocator=lambda name, settings: None,
        mqttClientFactory=mqttClients,
        socketClientFactory=FakeSocketClient,
    )
    instance.cameras._streamFactory = FakeStream
    descriptor = makeDescriptor(model="A1 Mini")
    instance.addPrinter(descriptor)

    mqttClients.last.simulateConnect()

    assert instance.registry.getCameraUrl(descriptor.serial) == (
        f"https://earlier-run.trycloudflare.com/stream/{descriptor.serial}"
    )
    instance.shutdown()


def test_remove_printer_tears_down_session_and_camera(bridge, mqttClients):
    descriptor = makeDescriptor()
    bridge.addPrinter(descriptor)
    client = mqttClients.last
    client.simulateConnect()
    stream = bridge.cameras.getJpegStream(descriptor.serial)

    bridge.removePrinter(descriptor.serial)

    assert client.disconnected
    assert stream.stopped
    assert bridge.registry.getDescriptor(descriptor.serial) is None


def test_removed_printer_stays_removed_when_reconnect_timer_was_running(bridge, mqttClients, timerRecorder):
    descriptor = makeDescriptor()
    bridge.addPrinter(descriptor)
    mqttClients.last.simulateConnectFail()
    pending = timerRecorder.timers[-1]

    bridge.removePrinter(descriptor.serial)
    pending.function(*pending.args)

    assert len(mqttClients.clients) == 1
    assert bridge.connections.getSession(descriptor.serial) is None
    assert bridge.cameras.getJpegStream(descriptor.serial) is None


def test_commands_reach_the_session(bridge, mqttClients):
    descriptor = makeDescriptor()
    bridge.addPrinter(descriptor)
    client = mqttClients.last
    client.simulateConnect()
    client.published.clear()

    assert bridge.executeCommand(descriptor.serial, {"type": "pause"}) is True
    assert client.published[0][1]["print"]["command"] == "pause"


def test_printer_list_from_channel_connects_each_printer(bridge, mqttClients):
    bridge.sio.trigger(
        "printers:list",
        [
            {"id": 1, "serialNumber": "A1", "ipAddress": "10.0.0.2", "accessCode": "x", "model": "P1S"},
            {"id": 2, "serialNumber": "B2", "ipAddress": "10.0.0.3", "accessCode": "y", "model": "X1C"},
        ],
    )

    assert [client.descriptor.serial for client in mqttClients.clients] == ["A1", "B2"]


def test_shutdown_is_idempotent(bridge, mqttClients):
    bridge.addPrinter(makeDescriptor())

    bridge.shutdown()
    bridge.shutdown()

    assert bridge.wait(0)
    assert mqttClients.last.disconnected
    assert bridge.sio.disconnectCalls == 1


def test_executable_search_order(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = BridgeSettings(dataDirectory=tmp_path / "data", binDirectory=tmp_path / "tools")

    assert executableSearchDirs(settings) == [
        tmp_path / "tools",
        tmp_path / "data",
        tmp_path / "data" / "bin",
        tmp_path,
        tmp_path / "bin",
    ]


def test_locate_executable_returns_none_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))

    assert locateExecutable("definitely-not-installed-tool", BridgeSettings(dataDirectory=tmp_path)) is None
