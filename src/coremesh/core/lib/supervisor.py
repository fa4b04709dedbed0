"""Process supervision for the core proxies and the edge proxy.

This module spawns the proxy executables of a run and reaps them again:
- Launching an executable with its config path substituted
- Redirecting its output to a log file
- A short crash-detection window after each launch
- Forceful, reverse-order cleanup that runs once per supervisor

Every spawned process gets a daemon waiter thread that blocks on the OS
wait and then fires the process's one-shot completion signal. Health checks
and cleanup only ever wait on that signal, never on the OS handle directly.

The supervisor is a smoke check, not a readiness probe: a process that is
still alive when the grace window elapses is considered healthy.

Example:
    supervisor = ProcessSupervisor()
    try:
        for spec in specs:
            supervisor.start_and_health_check(spec)
    finally:
        supervisor.kill_all()
"""

import contextlib
import enum
import os
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from loguru import logger

from coremesh.core.exceptions import EarlyExitError, SpawnError
from coremesh.core.utils.utils import format_command, replace_config_placeholder

# Constants
GRACE_WINDOW = 0.6  # Seconds a fresh process must survive
KILL_TIMEOUT = 2.0  # Seconds to wait for each process during cleanup

SpawnFunc = Callable[..., subprocess.Popen]
DoneCallback = Callable[["RunningProcess"], None]


class ProcessRole(enum.StrEnum):
    """Role of a supervised process within a run."""

    CORE = "core-proxy"
    EDGE = "edge-proxy"

    @property
    def log_prefix(self) -> str:
        return "[core]" if self is ProcessRole.CORE else "[xray]"


@dataclass(frozen=True)
class ProcessSpec:
    """Launch description of one supervised executable.

    Attributes:
        name: Display name used in logs and errors
        executable: Path of the binary to run
        args: Argument template, may contain the ``{{config}}`` placeholder
        config_path: Path substituted for the placeholder
        role: Core proxy or edge proxy
        log_path: File receiving stdout and stderr, ``None`` discards output
        env: Extra environment variables on top of the current environment
    """

    name: str
    executable: str
    args: tuple[str, ...]
    config_path: str
    role: ProcessRole
    log_path: Path | None = None
    env: dict[str, str] = field(default_factory=dict, compare=False)

    def command(self) -> list[str]:
        """Return the full argv with the config path substituted."""
        return [self.executable, *replace_config_placeholder(self.args, self.config_path)]

    def environment(self) -> dict[str, str] | None:
        if not self.env:
            return None
        return {**os.environ, **self.env}


class RunningProcess:
    """A spawned process and its one-shot completion signal."""

    def __init__(self, spec: ProcessSpec, process: subprocess.Popen, log_file: IO[bytes] | None = None) -> None:
        self.spec = spec
        self.process = process
        self.returncode: int | None = None
        self._log_file = log_file
        self._done = threading.Event()
        self._callbacks: list[DoneCallback] = []
        self._callbacks_lock = threading.Lock()
        self._waiter = threading.Thread(target=self._wait, name=f"wait-{spec.name}", daemon=True)
        self._waiter.start()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def exited_ok(self) -> bool:
        return self.done and self.returncode == 0

    def _wait(self) -> None:
        returncode = None
        try:
            returncode = self.process.wait()
        except Exception:
            logger.exception(f"Waiting on {self.name} failed")
        finally:
            if self._log_file is not None:
                with contextlib.suppress(OSError):
                    self._log_file.close()
            with self._callbacks_lock:
                self.returncode = returncode
                self._done.set()
                callbacks = list(self._callbacks)
            for callback in callbacks:
                callback(self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the process has exited or ``timeout`` elapses.

        Returns:
            bool: True if the process has exited
        """
        return self._done.wait(timeout)

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Call ``callback(self)`` once the process exits, immediately if it already has."""
        with self._callbacks_lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def kill(self) -> None:
        """Forcefully terminate the process if it is still running."""
        if self.done:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()


class ProcessSupervisor:
    """Spawns processes in order and reaps them in reverse order, once."""

    def __init__(
        self,
        grace_window: float = GRACE_WINDOW,
        kill_timeout: float = KILL_TIMEOUT,
        spawn: SpawnFunc = subprocess.Popen,
    ) -> None:
        self.grace_window = grace_window
        self.kill_timeout = kill_timeout
        self._spawn = spawn
        self._started: list[RunningProcess] = []
        self._lock = threading.Lock()
        self._kill_lock = threading.Lock()
        self._killed = False

    @property
    def started(self) -> list[RunningProcess]:
        """Processes in realized start order."""
        with self._lock:
            return list(self._started)

    @property
    def killed(self) -> bool:
        return self._killed

    def _open_log(self, spec: ProcessSpec) -> IO[bytes] | None:
        if spec.log_path is None:
            return None
        try:
            spec.log_path.parent.mkdir(parents=True, exist_ok=True)
            return spec.log_path.open("ab")
        except OSError as e:
            raise SpawnError(spec.name, f"open log {spec.log_path}: {e}") from e

    def start_and_health_check(self, spec: ProcessSpec) -> RunningProcess:
        """Spawn ``spec`` and make sure it survives the grace window.

        Args:
            spec: Process to launch

        Returns:
            RunningProcess: The healthy process, already tracked for cleanup

        Raises:
            SpawnError: If the executable could not be launched or kill_all already ran
            EarlyExitError: If the process exited before the grace window elapsed
        """
        with self._lock:
            if self._killed:
                raise SpawnError(spec.name, "supervisor already shut down")

        argv = spec.command()
        prefix = spec.role.log_prefix
        logger.info(f"{prefix} starting {spec.name}: {format_command(argv)}")
        if spec.log_path is not None:
            logger.debug(f"{prefix} {spec.name} output -> {spec.log_path}")

        log_file = self._open_log(spec)
        try:
            process = self._spawn(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file if log_file is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                env=spec.environment(),
            )
        except (OSError, ValueError) as e:
            if log_file is not None:
                log_file.close()
            raise SpawnError(spec.name, str(e)) from e

        running = RunningProcess(spec, process, log_file)
        with self._lock:
            late = self._killed
            if not late:
                self._started.append(running)
        if late:
            # kill_all ran while we were spawning and never saw this process
            logger.warning(f"{prefix} {spec.name} started after shutdown, killing it")
            running.kill()
            if not running.wait(self.kill_timeout):
                logger.warning(f"{spec.name} did not exit within {self.kill_timeout}s, leaving it to the OS")
            raise SpawnError(spec.name, "supervisor shut down during start")

        if running.wait(self.grace_window):
            raise EarlyExitError(spec.name, running.returncode)

        logger.info(f"{prefix} started {spec.name} (pid {running.pid})")
        return running

    def kill_all(self) -> None:
        """Kill every started process in reverse start order.

        Safe to call repeatedly and from several threads: the kill sequence
        runs once and concurrent callers return after it has finished.
        """
        with self._kill_lock:
            with self._lock:
                if self._killed:
                    return
                self._killed = True
                targets = list(reversed(self._started))

            for proc in targets:
                if not proc.done:
                    logger.debug(f"{proc.spec.role.log_prefix} killing {proc.name} (pid {proc.pid})")
                try:
                    proc.kill()
                except OSError as e:
                    logger.warning(f"Could not kill {proc.name}: {e}")
                if not proc.wait(self.kill_timeout):
                    logger.warning(f"{proc.name} did not exit within {self.kill_timeout}s, leaving it to the OS")
            if targets:
                logger.info("All processes terminated")
