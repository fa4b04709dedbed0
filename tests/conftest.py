import pytest

from coremesh.core.lib.supervisor import ProcessSupervisor
from tests.fakes import FakeSpawner, MemoryProxyStore


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def supervisor(spawner):
    return ProcessSupervisor(grace_window=0.05, kill_timeout=0.2, spawn=spawner)


@pytest.fixture
def store():
    return MemoryProxyStore()


@pytest.fixture
def edge_config(tmp_path):
    path = tmp_path / "xray.generated.json"
    path.write_text(
        '{"inbounds": ['
        '{"tag": "in-socks", "protocol": "socks", "listen": "0.0.0.0", "port": 10808},'
        '{"tag": "in-http", "protocol": "http", "listen": "", "port": 10809}'
        "]}",
        encoding="utf-8",
    )
    return path
