"""Supervised run of the core proxies, the edge proxy and the system proxy.

This module drives one run through its states:

    IDLE -> STARTING_CORES -> STARTING_EDGE -> APPLYING_SYSTEM_PROXY
         -> RUNNING -> SHUTTING_DOWN -> TERMINATED

Cores start in declared order, strictly before the edge proxy. The system
proxy is only touched once the edge proxy survived its grace window. While
running, the controller waits for whichever comes first: the edge proxy
exiting or ``cancel()``. Shutdown restores the system proxy and kills
everything that started, in reverse order, exactly once no matter how many
threads ask for it.

A cancelled run is a clean run. The outcome is ``FAILED`` only for startup
errors and for the edge proxy exiting with a non-zero status.

Example:
    controller = RunController(cores, edge)
    signal.signal(signal.SIGINT, lambda *_: controller.cancel())
    result = controller.run()
    sys.exit(0 if result.ok else 1)
"""

import enum
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from coremesh.core.exceptions import CancellationRequested, CoremeshError, ProcessExitError
from coremesh.core.lib.supervisor import ProcessSpec, ProcessSupervisor, RunningProcess
from coremesh.core.lib.system_proxy import RestoreFunc, SystemProxyController

# Constants
WAIT_SLICE = 0.5  # Seconds between wake-ups while running, keeps signal handlers responsive


class RunState(enum.Enum):
    IDLE = "idle"
    STARTING_CORES = "starting-cores"
    STARTING_EDGE = "starting-edge"
    APPLYING_SYSTEM_PROXY = "applying-system-proxy"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


class RunOutcome(enum.Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """Terminal result of a run.

    Attributes:
        outcome: OK or FAILED
        reason: Short human readable terminal reason
        error: The first startup error or the edge exit error, if any
    """

    outcome: RunOutcome
    reason: str
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.OK


class RunController:
    """Runs cores and the edge proxy and owns their shutdown."""

    def __init__(
        self,
        cores: Sequence[ProcessSpec],
        edge: ProcessSpec,
        supervisor: ProcessSupervisor | None = None,
        system_proxy: SystemProxyController | None = None,
        on_running: Callable[["RunController"], None] | None = None,
        wait_slice: float = WAIT_SLICE,
    ) -> None:
        self.cores = list(cores)
        self.edge = edge
        self.supervisor = supervisor if supervisor is not None else ProcessSupervisor()
        self.system_proxy = system_proxy if system_proxy is not None else SystemProxyController()
        self.on_running = on_running
        self.wait_slice = wait_slice

        self.proxy_changed = False
        self.edge_process: RunningProcess | None = None
        self.history: list[RunState] = [RunState.IDLE]

        self._restore_proxy: RestoreFunc | None = None
        self._cancelled = threading.Event()
        self._wake = threading.Event()
        self._wake_lock = threading.RLock()
        self._wake_reason: str | None = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    @property
    def state(self) -> RunState:
        return self.history[-1]

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _transition(self, state: RunState) -> None:
        logger.debug(f"[run] {self.state.value} -> {state.value}")
        self.history.append(state)

    def _wake_up(self, reason: str) -> None:
        with self._wake_lock:
            if self._wake_reason is None:
                self._wake_reason = reason
        self._wake.set()

    def cancel(self) -> None:
        """Request a clean stop. Safe to call from signal handlers and other threads."""
        # no logging here: a signal may interrupt a loguru call on this thread
        self._cancelled.set()
        self._wake_up("cancelled")

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise CancellationRequested("run cancelled during startup")

    def _start(self) -> None:
        self._transition(RunState.STARTING_CORES)
        for spec in self.cores:
            self._check_cancelled()
            self.supervisor.start_and_health_check(spec)

        self._check_cancelled()
        self._transition(RunState.STARTING_EDGE)
        self.edge_process = self.supervisor.start_and_health_check(self.edge)
        self.edge_process.add_done_callback(lambda _: self._wake_up("edge-exited"))

        self._check_cancelled()
        self._transition(RunState.APPLYING_SYSTEM_PROXY)
        restore, changed = self.system_proxy.configure_for_run(self.edge.config_path)
        with self._shutdown_lock:
            if not self._shut_down:
                self._restore_proxy = restore
                self.proxy_changed = changed
        if self._restore_proxy is not restore:
            # shutdown already ran on another thread
            restore()
            raise CancellationRequested("run shut down while applying the system proxy")
        if changed:
            logger.info("[sysproxy] enabled and pointed to xray inbound")
        else:
            logger.info("[sysproxy] unchanged (already configured or unsupported platform)")

    def _wait(self) -> RunResult:
        self._transition(RunState.RUNNING)
        if self.on_running is not None:
            self.on_running(self)

        while not self._wake.wait(self.wait_slice):
            pass

        if self._wake_reason == "cancelled":
            logger.info("[run] shutdown requested")
            return RunResult(RunOutcome.OK, "cancelled")

        edge = self.edge_process
        if edge is not None and edge.exited_ok:
            logger.info(f"[xray] {edge.name} exited")
            return RunResult(RunOutcome.OK, "edge exited")

        error = ProcessExitError(self.edge.name, edge.returncode if edge is not None else None)
        logger.error(f"[xray] {error}")
        return RunResult(RunOutcome.FAILED, "edge failed", error)

    def run(self) -> RunResult:
        """Start everything, wait, shut down.

        Returns:
            RunResult: OK for a cancelled run or a clean edge exit, FAILED otherwise
        """
        try:
            self._start()
            result = self._wait()
        except CancellationRequested:
            logger.info("[run] startup cancelled")
            result = RunResult(RunOutcome.OK, "cancelled")
        except CoremeshError as e:
            if self._shut_down:
                # shutdown() on another thread pulled the processes out from under startup
                logger.info(f"[run] startup interrupted by shutdown: {e}")
                result = RunResult(RunOutcome.OK, "cancelled")
            else:
                logger.error(f"[run] {e}")
                result = RunResult(RunOutcome.FAILED, "startup failed", e)
        finally:
            self.shutdown()

        logger.info(f"[run] finished: {result.outcome.value} ({result.reason})")
        return result

    def shutdown(self) -> None:
        """Restore the system proxy and kill all started processes, once.

        Failures here are logged and never change the run's outcome.
        """
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
            self._transition(RunState.SHUTTING_DOWN)

            if self._restore_proxy is not None:
                try:
                    self._restore_proxy()
                except Exception:
                    logger.exception("[sysproxy] restore failed")
                else:
                    if self.proxy_changed:
                        logger.info("[sysproxy] restored previous system proxy settings")

            self.supervisor.kill_all()
            self._transition(RunState.TERMINATED)
