import pytest

from core.errors import ContentionError, GenesisError, LaunchError
from core.procs import SESSION_ENV
from fakes import make_health
from node.key_store import KeyMaterialStore
from services.health_checker import HealthStatus
from services.process_supervisor import (
    ProcessSupervisor,
    SupervisorState,
    read_pid_file,
    tail_lines,
    write_pid_file,
)


@pytest.fixture
def keys(node_config, runner):
    return KeyMaterialStore(runner, node_config.keygen_bin).resolve(node_config.keys_dir)


@pytest.fixture
def supervisor(node_config, runner, inspector, healthy_rpc):
    return ProcessSupervisor(node_config, runner, inspector, make_health(node_config, healthy_rpc))


def test_start_runs_genesis_then_launches(supervisor, runner, inspector, node_config, keys):
    handle, status = supervisor.start(keys)

    assert status is HealthStatus.RESPONDING
    assert supervisor.state is SupervisorState.RUNNING
    assert handle.live
    assert handle.pid in inspector.alive
    assert read_pid_file(node_config.pid_file) == handle.pid
    assert len(runner.tool_calls("solana-genesis")) == 1
    assert (node_config.ledger_dir / "genesis.bin").exists()
    assert node_config.log_file.read_text() == "validator booting\n"


def test_launch_arguments_and_session_marker(supervisor, runner, node_config, keys):
    supervisor.start(keys)
    args, env = runner.spawned[0]

    assert args[0] == str(node_config.validator_bin)
    assert args[args.index("--ledger") + 1] == str(node_config.ledger_dir)
    assert args[args.index("--identity") + 1] == str(node_config.keys_dir / "identity-keypair.json")
    assert args[args.index("--vote-account") + 1] == str(node_config.keys_dir / "vote-account-keypair.json")
    assert args[args.index("--rpc-port") + 1] == "18899"
    assert args[args.index("--rpc-bind-address") + 1] == "0.0.0.0"
    assert args[args.index("--limit-ledger-size") + 1] == "10000000000"
    assert args.count("--account-index") == 3
    assert "--full-rpc-api" in args
    assert env == {SESSION_ENV: "solana-validator"}


def test_second_start_leaves_exactly_one_validator(supervisor, inspector, keys):
    first, _ = supervisor.start(keys)
    second, _ = supervisor.start(keys)

    assert first.pid != second.pid
    assert first.pid in inspector.terminated
    assert inspector.alive == {second.pid}


def test_cleanup_finishes_before_genesis(supervisor, runner, inspector, keys):
    first, _ = supervisor.start(keys)
    original_run = runner.run

    def checked_run(args, **kwargs):
        if args[0].name == "solana-genesis":
            assert first.pid not in inspector.alive
        return original_run(args, **kwargs)

    runner.run = checked_run
    supervisor.start(keys)


def test_start_reports_not_responding_without_failing(node_config, runner, inspector, dead_rpc, keys):
    supervisor = ProcessSupervisor(node_config, runner, inspector, make_health(node_config, dead_rpc))
    handle, status = supervisor.start(keys)

    assert status is HealthStatus.NOT_RESPONDING
    assert supervisor.state is SupervisorState.STARTING
    assert handle.live


def test_port_held_by_unrelated_process_is_reclaimed(supervisor, runner, inspector, node_config, keys):
    inspector.foreign.add(999)
    inspector.ports[node_config.rpc_port] = [999]

    handle, _ = supervisor.start(keys)

    assert 999 in inspector.terminated
    assert handle.live
    assert len(runner.tool_calls("solana-genesis")) == 1


def test_unreclaimable_port_fails_before_genesis(supervisor, runner, inspector, node_config, keys):
    inspector.ports[node_config.rpc_port] = [None]

    with pytest.raises(ContentionError, match=f"port {node_config.rpc_port}"):
        supervisor.start(keys)

    assert supervisor.state is SupervisorState.FAILED
    assert runner.tool_calls("solana-genesis") == []
    assert runner.spawned == []


def test_stale_session_is_destroyed(supervisor, inspector, keys):
    inspector.alive.add(777)
    inspector.sessions["solana-validator"] = [777]

    supervisor.start(keys)

    assert 777 in inspector.terminated


def test_session_permission_denied_names_session(supervisor, inspector, keys):
    inspector.foreign.add(778)
    inspector.denied.add(778)
    inspector.sessions["solana-validator"] = [778]

    with pytest.raises(ContentionError, match="session 'solana-validator'"):
        supervisor.start(keys)


def test_genesis_failure_is_fatal(supervisor, runner, keys):
    runner.failures["solana-genesis"] = "boom"

    with pytest.raises(GenesisError):
        supervisor.start(keys)

    assert supervisor.state is SupervisorState.FAILED
    assert runner.spawned == []


def test_immediate_exit_is_launch_failure(supervisor, runner, node_config, keys):
    runner.exit_code = 1

    with pytest.raises(LaunchError, match="exited immediately with code 1"):
        supervisor.start(keys)

    assert supervisor.state is SupervisorState.FAILED
    assert not node_config.pid_file.exists()


def test_stop_when_nothing_running(supervisor, node_config):
    assert supervisor.stop() is False
    assert supervisor.state is SupervisorState.STOPPED
    assert not node_config.pid_file.exists()


def test_stop_removes_stale_pid_file(supervisor, inspector, node_config):
    write_pid_file(node_config.pid_file, 31337)

    assert supervisor.stop() is False
    assert not node_config.pid_file.exists()
    assert inspector.terminated == []


def test_stop_terminates_running_validator(supervisor, inspector, node_config, keys):
    handle, _ = supervisor.start(keys)

    assert supervisor.stop() is True
    assert inspector.terminated[-1] == handle.pid
    assert not inspector.is_alive(handle.pid)
    assert not node_config.pid_file.exists()


def test_probe_distrusts_reused_pid(supervisor, inspector, node_config):
    inspector.foreign.add(4242)
    write_pid_file(node_config.pid_file, 4242)

    handle = supervisor.probe()

    assert not handle.live
    assert handle.stale
    assert supervisor.state is SupervisorState.STOPPED


def test_probe_reflects_crash(supervisor, inspector, keys):
    handle, _ = supervisor.start(keys)
    inspector.alive.discard(handle.pid)

    assert not supervisor.probe().live


def test_restart_replaces_process(supervisor, inspector, keys):
    first, _ = supervisor.start(keys)
    second, status = supervisor.restart(keys)

    assert status is HealthStatus.RESPONDING
    assert inspector.alive == {second.pid}
    assert first.pid in inspector.terminated


def test_logrotate_installed_once_as_root(supervisor, node_config, monkeypatch):
    monkeypatch.setattr("services.process_supervisor.os.geteuid", lambda: 0)
    node_config.logrotate_path.parent.mkdir()

    assert supervisor.install_logrotate() is True
    stanza = node_config.logrotate_path.read_text()
    assert f"{node_config.ledger_dir}/solana-validator-*.log" in stanza
    assert "rotate 1" in stanza
    assert supervisor.install_logrotate() is False


def test_logrotate_skipped_for_regular_user(supervisor, node_config, monkeypatch):
    monkeypatch.setattr("services.process_supervisor.os.geteuid", lambda: 1000)
    assert supervisor.install_logrotate() is False
    assert not node_config.logrotate_path.exists()


def test_pid_file_helpers(tmp_path):
    path = tmp_path / "ledger" / "production-validator.pid"
    assert read_pid_file(path) is None

    write_pid_file(path, 1234)
    assert path.read_text() == "1234\n"
    assert read_pid_file(path) == 1234

    path.write_text("garbage\n")
    assert read_pid_file(path) is None


def test_tail_lines(tmp_path):
    log = tmp_path / "validator.log"
    log.write_text("".join(f"line {i}\n" for i in range(100)))

    assert tail_lines(log, 3) == ["line 97", "line 98", "line 99"]
    assert tail_lines(tmp_path / "missing.log", 3) == []
