"""Test doubles: a fake ``Popen`` spawner and an in-memory proxy settings store."""

import itertools
import threading
import time

from coremesh.core.exceptions import SystemProxyError
from coremesh.core.lib.proxy_store import ProxySnapshot
from coremesh.core.lib.supervisor import ProcessRole, ProcessSpec

_pids = itertools.count(41000)


class FakePopen:
    """Stands in for ``subprocess.Popen``; exits only when told to or killed."""

    def __init__(self, argv, journal, stubborn=False, **kwargs):
        self.args = argv
        self.kwargs = kwargs
        self.pid = next(_pids)
        self.returncode = None
        self.kill_count = 0
        self._journal = journal
        self._stubborn = stubborn
        self._exited = threading.Event()

    @property
    def name(self):
        return self.args[0]

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self.returncode

    def exit(self, code):
        self.returncode = code
        self._exited.set()

    def kill(self):
        self.kill_count += 1
        self._journal.append(("kill", self.name))
        if not self._stubborn:
            self.exit(-9)


class FakeSpawner:
    """Callable ``spawn`` replacement keyed by executable name.

    Behaviours:
        crash: exits with status 1 right after launch
        quit: exits with status 0 right after launch
        missing: launch raises FileNotFoundError
        stubborn: ignores kill
    """

    def __init__(self):
        self.journal = []
        self.processes = {}
        self.crash = set()
        self.quit = set()
        self.missing = set()
        self.stubborn = set()

    @property
    def spawned(self):
        return [name for event, name in self.journal if event == "spawn"]

    @property
    def killed(self):
        return [name for event, name in self.journal if event == "kill"]

    def __call__(self, argv, **kwargs):
        name = argv[0]
        if name in self.missing:
            raise FileNotFoundError(2, "No such file or directory", name)
        proc = FakePopen(argv, self.journal, stubborn=name in self.stubborn, **kwargs)
        self.journal.append(("spawn", name))
        self.processes[name] = proc
        if name in self.crash:
            proc.exit(1)
        elif name in self.quit:
            proc.exit(0)
        return proc


class MemoryProxyStore:
    """In-memory ``ProxySettingsStore``."""

    supported = True

    def __init__(self, snapshot=None):
        self.current = snapshot if snapshot is not None else ProxySnapshot(enabled=False, bypass="example.com")
        self.applied = []
        self.reads = 0
        self.fail_read = False
        self.fail_apply_from = None
        self.fail_after_write = set()

    def read(self):
        self.reads += 1
        if self.fail_read:
            raise SystemProxyError("registry unavailable")
        return self.current

    def apply(self, snapshot):
        if self.fail_apply_from is not None and len(self.applied) >= self.fail_apply_from:
            raise SystemProxyError("registry is read-only")
        self.applied.append(snapshot)
        self.current = snapshot
        if len(self.applied) in self.fail_after_write:
            raise SystemProxyError("settings written but refresh failed")


def make_spec(name, role=ProcessRole.CORE, config_path="", **kwargs):
    return ProcessSpec(
        name=name,
        executable=name,
        args=("-c", "{{config}}"),
        config_path=config_path or f"{name}.json",
        role=role,
        **kwargs,
    )


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
