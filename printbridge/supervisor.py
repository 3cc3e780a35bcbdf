"""Supervision of long-lived helper executables (camera relay, tunnel)."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .backoff import BackoffPolicy, BackoffTracker
from .exceptions import ExecutableNotFoundError

log = logging.getLogger(__name__)


class ProcessState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING_INTENTIONALLY = "stopping_intentionally"
    SHUT_DOWN = "shut_down"


def findExecutable(name: str, searchDirs: Iterable[Optional[os.PathLike]] = ()) -> str:
    """Locate *name* in *searchDirs* first, then on ``PATH``.

    Raises:
        ExecutableNotFoundError: when no candidate exists
    """

    candidates = [f"{name}.exe", name] if os.name == "nt" else [name]
    searched: List[str] = []
    for directory in searchDirs:
        if not directory:
            continue
        for candidate in candidates:
            path = Path(directory) / candidate
            searched.append(str(path))
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)

    found = shutil.which(name)
    if found:
        return found
    searched.append("PATH")
    raise ExecutableNotFoundError(name, searched)


class ProcessSupervisor:
    """Spawn an executable and restart it after unexpected exits.

    An exit is handled in one of three ways: nothing happens once shutdown has
    begun, exactly one restart is suppressed after :meth:`stopIntentionally`,
    and every other exit schedules a restart after the policy's delay.
    """

    def __init__(
        self,
        name: str,
        executable: str,
        args: Sequence[str] = (),
        *,
        restartPolicy: BackoffPolicy,
        cwd: Optional[str] = None,
        onOutput: Optional[Callable[[str], None]] = None,
        onExit: Optional[Callable[[Optional[int]], None]] = None,
        onBeforeStart: Optional[Callable[[], None]] = None,
        popenFactory: Callable[..., Any] = subprocess.Popen,
        timerFactory: Callable[..., Any] = threading.Timer,
        stopTimeout: float = 5.0,
    ) -> None:
        self.name = name
        self.executable = executable
        self._args = list(args)
        self._cwd = cwd
        self._onOutput = onOutput
        self._onExit = onExit
        self._onBeforeStart = onBeforeStart
        self._popenFactory = popenFactory
        self._timerFactory = timerFactory
        self._stopTimeout = stopTimeout
        self._backoff = BackoffTracker(restartPolicy)
        self._state = ProcessState.STOPPED
        self._process: Any = None
        self._restartTimer: Any = None
        self._lock = threading.RLock()

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    def isRunning(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def markHealthy(self) -> None:
        """Reset the restart backoff after the owner confirmed a successful start."""
        self._backoff.reset()

    def start(self) -> bool:
        with self._lock:
            if self._state is ProcessState.SHUT_DOWN:
                return False
            if self._process is not None:
                if self._process.poll() is None:
                    return False
                # Exited, but the waiter has not reported it yet
                self._process = None
                self._state = ProcessState.STOPPED
            if self._restartTimer is not None:
                self._restartTimer.cancel()
                self._restartTimer = None

            if self._onBeforeStart is not None:
                self._onBeforeStart()

            command = [self.executable, *self._args]
            try:
                process = self._popenFactory(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    bufsize=1,
                    cwd=self._cwd,
                )
            except OSError as error:
                log.error("Failed to start %s: %s", self.name, error)
                self._scheduleRestartLocked()
                return False

            self._process = process
            self._state = ProcessState.RUNNING

        log.info("Started %s (pid %s)", self.name, getattr(process, "pid", "?"))
        if getattr(process, "stdout", None) is not None:
            threading.Thread(
                target=self._readOutput, args=(process,), name=f"{self.name}-output", daemon=True
            ).start()
        threading.Thread(
            target=self._waitForExit, args=(process,), name=f"{self.name}-waiter", daemon=True
        ).start()
        return True

    def stopIntentionally(self, kill: bool = False) -> bool:
        """Stop the process without triggering the automatic restart.

        With *kill* the process is killed outright instead of terminated.
        """

        with self._lock:
            process = self._process
            if process is None or self._state is ProcessState.SHUT_DOWN:
                return False
            self._state = ProcessState.STOPPING_INTENTIONALLY
        if kill:
            self.forceKill()
            try:
                process.wait(timeout=self._stopTimeout)
            except subprocess.TimeoutExpired:
                log.warning("%s still running %.0fs after kill", self.name, self._stopTimeout)
        else:
            self._terminate(process)
        return True

    def forceKill(self) -> bool:
        """Kill the process; unless an intentional stop is pending the exit counts as a crash."""

        with self._lock:
            process = self._process
        if process is None:
            return False
        try:
            process.kill()
        except OSError as error:
            log.debug("Kill of %s failed: %s", self.name, error)
        return True

    def shutdown(self) -> None:
        with self._lock:
            self._state = ProcessState.SHUT_DOWN
            if self._restartTimer is not None:
                self._restartTimer.cancel()
                self._restartTimer = None
            process = self._process
        if process is not None:
            self._terminate(process)
            log.info("Stopped %s", self.name)

    def _terminate(self, process: Any) -> None:
        try:
            process.terminate()
            process.wait(timeout=self._stopTimeout)
        except subprocess.TimeoutExpired:
            log.warning("%s did not exit within %.0fs, killing", self.name, self._stopTimeout)
            process.kill()
        except OSError as error:
            log.debug("Terminate of %s failed: %s", self.name, error)

    def _readOutput(self, process: Any) -> None:
        try:
            for line in process.stdout:
                line = line.rstrip()
                if not line:
                    continue
                log.debug("[%s] %s", self.name, line)
                if self._onOutput is not None:
                    self._onOutput(line)
        except (OSError, ValueError) as error:
            log.debug("Output reader for %s stopped: %s", self.name, error)

    def _waitForExit(self, process: Any) -> None:
        returnCode = process.wait()
        self._handleExit(process, returnCode)

    def _handleExit(self, process: Any, returnCode: Optional[int]) -> None:
        with self._lock:
            if process is not self._process:
                return
            self._process = None
            previous = self._state
            if previous is ProcessState.SHUT_DOWN:
                outcome = "shutdown"
            elif previous is ProcessState.STOPPING_INTENTIONALLY:
                self._state = ProcessState.STOPPED
                outcome = "intentional"
            else:
                self._state = ProcessState.STOPPED
                outcome = "crash"
                delay = self._scheduleRestartLocked()

        if outcome == "crash":
            log.warning("%s exited with code %s, restarting in %.0fs", self.name, returnCode, delay)
        else:
            log.info("%s exited with code %s (%s)", self.name, returnCode, outcome)
        if self._onExit is not None:
            self._onExit(returnCode)

    def _scheduleRestartLocked(self) -> float:
        delay = self._backoff.nextDelay()
        timer = self._timerFactory(delay, self._restartDue)
        timer.daemon = True
        self._restartTimer = timer
        timer.start()
        return delay

    def _restartDue(self) -> None:
        with self._lock:
            self._restartTimer = None
            if self._state is ProcessState.SHUT_DOWN:
                return
        self.start()
