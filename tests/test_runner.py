"""Tests for the run state machine: startup order, failure unwinding and shutdown."""

import threading

import pytest
from loguru import logger

from coremesh.core.exceptions import EarlyExitError, ProcessExitError, SpawnError, SystemProxyError
from coremesh.core.lib.proxy_store import ProxySnapshot
from coremesh.core.lib.supervisor import ProcessRole, ProcessSupervisor
from coremesh.core.lib.system_proxy import SystemProxyController
from coremesh.core.runner import RunController, RunOutcome, RunState
from tests.fakes import make_spec, wait_for


@pytest.fixture
def make_controller(supervisor, store, edge_config):
    def factory(core_names=("core-a", "core-b", "core-c"), **kwargs):
        cores = [make_spec(name) for name in core_names]
        edge = make_spec("xray", ProcessRole.EDGE, config_path=str(edge_config))
        return RunController(
            cores,
            edge,
            supervisor=supervisor,
            system_proxy=SystemProxyController(store),
            wait_slice=0.01,
            **kwargs,
        )

    return factory


class Background:
    """Runs ``controller.run()`` on a thread and waits for RUNNING."""

    def __init__(self, controller):
        self.controller = controller
        self.result = None
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        self.result = self.controller.run()

    def __enter__(self):
        self.thread.start()
        assert wait_for(lambda: self.controller.state is RunState.RUNNING)
        return self

    def __exit__(self, *exc):
        self.controller.cancel()
        self.thread.join(timeout=5)
        assert not self.thread.is_alive()

    def join(self):
        self.thread.join(timeout=5)
        assert not self.thread.is_alive()
        return self.result


class TestStartupOrder:
    def test_cores_in_declared_order_before_edge(self, make_controller, spawner):
        controller = make_controller()
        with Background(controller):
            assert spawner.spawned == ["core-a", "core-b", "core-c", "xray"]

    def test_state_history(self, make_controller):
        controller = make_controller()
        with Background(controller) as bg:
            controller.cancel()
            bg.join()

        assert controller.history == [
            RunState.IDLE,
            RunState.STARTING_CORES,
            RunState.STARTING_EDGE,
            RunState.APPLYING_SYSTEM_PROXY,
            RunState.RUNNING,
            RunState.SHUTTING_DOWN,
            RunState.TERMINATED,
        ]

    def test_system_proxy_applied_before_running(self, make_controller, store):
        seen = []
        controller = make_controller(on_running=lambda c: seen.append(list(store.applied)))
        with Background(controller):
            pass

        assert len(seen) == 1
        assert seen[0][0].server == "127.0.0.1:10809"
        assert controller.proxy_changed

    def test_no_cores(self, make_controller, spawner):
        controller = make_controller(core_names=())
        with Background(controller):
            assert spawner.spawned == ["xray"]


class TestStartupFailures:
    def test_core_early_exit_unwinds_started_cores(self, make_controller, spawner, store):
        spawner.crash.add("core-c")
        result = make_controller().run()

        assert result.outcome is RunOutcome.FAILED
        assert isinstance(result.error, EarlyExitError)
        assert spawner.spawned == ["core-a", "core-b", "core-c"]
        assert spawner.killed == ["core-b", "core-a"]
        assert store.reads == 0

    def test_second_core_failing_unwinds_the_first(self, make_controller, spawner):
        spawner.crash.add("core-b")
        result = make_controller().run()

        assert result.outcome is RunOutcome.FAILED
        assert spawner.spawned == ["core-a", "core-b"]
        assert spawner.killed == ["core-a"]

    def test_core_spawn_failure(self, make_controller, spawner):
        spawner.missing.add("core-a")
        result = make_controller().run()

        assert result.outcome is RunOutcome.FAILED
        assert isinstance(result.error, SpawnError)
        assert spawner.spawned == []

    def test_edge_early_exit_never_touches_system_proxy(self, make_controller, spawner, store):
        spawner.crash.add("xray")
        controller = make_controller()
        result = controller.run()

        assert result.outcome is RunOutcome.FAILED
        assert isinstance(result.error, EarlyExitError)
        assert store.reads == 0
        assert store.applied == []
        assert spawner.killed == ["core-c", "core-b", "core-a"]
        assert controller.state is RunState.TERMINATED

    def test_system_proxy_failure_kills_everything(self, make_controller, spawner, store):
        store.fail_read = True
        result = make_controller().run()

        assert result.outcome is RunOutcome.FAILED
        assert isinstance(result.error, SystemProxyError)
        assert spawner.killed == ["xray", "core-c", "core-b", "core-a"]

    def test_cancel_before_start_spawns_nothing(self, make_controller, spawner):
        controller = make_controller()
        controller.cancel()

        result = controller.run()

        assert result.outcome is RunOutcome.OK
        assert result.reason == "cancelled"
        assert spawner.spawned == []

    def test_cancel_during_startup_stops_at_next_step(self, make_controller, spawner):
        controller = make_controller()
        original = controller.supervisor.start_and_health_check

        def start_then_cancel(spec):
            running = original(spec)
            if spec.name == "core-a":
                controller.cancel()
            return running

        controller.supervisor.start_and_health_check = start_then_cancel
        result = controller.run()

        assert result.ok
        assert spawner.spawned == ["core-a"]
        assert spawner.killed == ["core-a"]

    def test_cancel_from_inside_a_log_call(self, make_controller, spawner):
        controller = make_controller()
        handler_id = logger.add(lambda _message: controller.cancel(), level="DEBUG")
        try:
            logger.info("signal lands while this record is emitted")
        finally:
            logger.remove(handler_id)

        assert controller.cancelled
        result = controller.run()
        assert result.reason == "cancelled"
        assert spawner.spawned == []

    def test_shutdown_during_spawn_is_a_cancelled_run(self, spawner, store, edge_config):
        entered = threading.Event()
        release = threading.Event()

        def spawn(argv, **kwargs):
            if argv[0] == "core-b":
                entered.set()
                release.wait(5)
            return spawner(argv, **kwargs)

        controller = RunController(
            [make_spec("core-a"), make_spec("core-b")],
            make_spec("xray", ProcessRole.EDGE, config_path=str(edge_config)),
            supervisor=ProcessSupervisor(grace_window=0.05, kill_timeout=0.2, spawn=spawn),
            system_proxy=SystemProxyController(store),
            wait_slice=0.01,
        )
        bg = Background(controller)
        bg.thread.start()
        assert entered.wait(5)

        controller.shutdown()
        release.set()
        result = bg.join()

        assert result.outcome is RunOutcome.OK
        assert result.reason == "cancelled"
        assert spawner.spawned == ["core-a", "core-b"]
        assert spawner.killed == ["core-a", "core-b"]
        assert store.reads == 0
        assert controller.history.count(RunState.SHUTTING_DOWN) == 1


class TestRunning:
    def test_cancellation_is_a_clean_stop(self, make_controller, spawner, store):
        before = store.current
        controller = make_controller()
        with Background(controller) as bg:
            controller.cancel()
            result = bg.join()

        assert result.outcome is RunOutcome.OK
        assert result.error is None
        assert store.current == before
        assert spawner.killed == ["xray", "core-c", "core-b", "core-a"]

    def test_edge_clean_exit_is_ok(self, make_controller, spawner):
        controller = make_controller()
        with Background(controller) as bg:
            spawner.processes["xray"].exit(0)
            result = bg.join()

        assert result.outcome is RunOutcome.OK
        assert result.reason == "edge exited"
        assert spawner.killed == ["core-c", "core-b", "core-a"]

    def test_edge_failure_exit_fails_the_run(self, make_controller, spawner, store):
        before = store.current
        controller = make_controller()
        with Background(controller) as bg:
            spawner.processes["xray"].exit(2)
            result = bg.join()

        assert result.outcome is RunOutcome.FAILED
        assert isinstance(result.error, ProcessExitError)
        assert result.error.returncode == 2
        assert store.current == before

    def test_restore_failure_does_not_change_outcome(self, make_controller, spawner, store):
        store.fail_apply_from = 1
        controller = make_controller()
        with Background(controller) as bg:
            controller.cancel()
            result = bg.join()

        assert result.outcome is RunOutcome.OK
        assert spawner.killed == ["xray", "core-c", "core-b", "core-a"]
        assert controller.state is RunState.TERMINATED

    def test_racing_shutdown_paths_run_cleanup_once(self, make_controller, spawner, store):
        controller = make_controller()
        with Background(controller) as bg:
            barrier = threading.Barrier(3)

            def edge_exit():
                barrier.wait()
                spawner.processes["xray"].exit(1)

            def cancel():
                barrier.wait()
                controller.cancel()

            def shutdown():
                barrier.wait()
                controller.shutdown()

            threads = [threading.Thread(target=f) for f in (edge_exit, cancel, shutdown)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)
            bg.join()

        # one apply at startup plus exactly one restore
        assert len(store.applied) == 2
        assert store.current == ProxySnapshot(enabled=False, bypass="example.com")
        assert controller.history.count(RunState.SHUTTING_DOWN) == 1
        assert all(p.kill_count <= 1 for p in spawner.processes.values())
        assert spawner.killed[-3:] == ["core-c", "core-b", "core-a"]

    def test_shutdown_is_idempotent(self, make_controller, spawner, store):
        controller = make_controller()
        with Background(controller) as bg:
            controller.cancel()
            bg.join()
        controller.shutdown()

        assert len(store.applied) == 2
        assert spawner.killed == ["xray", "core-c", "core-b", "core-a"]
