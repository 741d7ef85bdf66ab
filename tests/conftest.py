import dataclasses
import sys

import httpx
import pytest

from core.config import KEY_FILES, ConfigManager
from fakes import FakeInspector, FakeRunner, rpc_handler

SLEEPER = "#!{python}\nimport time\ntime.sleep(60)\n"
BINARIES = ("solana-validator", "solana-keygen", "solana-genesis")


def make_executable(path, body):
    path.write_text(body)
    path.chmod(0o755)


@pytest.fixture
def workdir(tmp_path):
    """A working directory with fake binaries under target/release and all four keys."""
    root = tmp_path.resolve()
    bin_dir = root / "target" / "release"
    bin_dir.mkdir(parents=True)
    for name in BINARIES:
        make_executable(bin_dir / name, SLEEPER.format(python=sys.executable))

    keys = root / "keys"
    keys.mkdir()
    for name in KEY_FILES.values():
        (keys / name).write_text("[1,2,3]")
    return root


@pytest.fixture
def node_config(workdir):
    manager = ConfigManager(workdir / "validator.yml")
    manager.apply_overrides(rpc_port=18899)
    config = manager.resolve(workdir)
    return dataclasses.replace(
        config,
        launch_grace=0.0,
        stop_timeout=1.0,
        health_max_attempts=2,
        health_interval=0.0,
        logrotate_path=workdir / "logrotate" / "solana-validator",
    )


@pytest.fixture
def inspector():
    return FakeInspector()


@pytest.fixture
def runner(inspector):
    return FakeRunner(inspector)


@pytest.fixture
def healthy_rpc():
    return rpc_handler({"getHealth": "ok", "getSlot": 42, "getVersion": {"solana-core": "2.1.0"}})


@pytest.fixture
def dead_rpc():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)
    return handler
