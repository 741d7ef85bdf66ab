import dataclasses

import pytest

from core.config import DEFAULT_CONFIG, ConfigManager
from core.errors import BinaryNotFound, ConfigFileError, ConfigurationError


def test_defaults_without_config_file(workdir):
    config = ConfigManager(workdir / "validator.yml").resolve(workdir)

    assert config.ledger_dir == workdir / "ledger"
    assert config.keys_dir == workdir / "keys"
    assert config.fixtures_dir == workdir / "fixtures"
    assert config.rpc_bind_address == "0.0.0.0"
    assert config.rpc_probe_address == "127.0.0.1"
    assert config.rpc_port == 8899
    assert config.stake_lamports == 500000000000000000
    assert config.faucet_lamports == 10000000
    assert config.cluster_type == "development"
    assert config.account_indexes == ("program-id", "spl-token-owner", "spl-token-mint")
    assert config.pid_file == workdir / "ledger" / "production-validator.pid"
    assert config.log_file == workdir / "ledger" / "solana-validator-identity-keypair.log"
    assert config.rpc_url == "http://127.0.0.1:8899/"


def test_load_does_not_mutate_defaults(workdir):
    (workdir / "validator.yml").write_text("rpc:\n  port: 9000\n")
    ConfigManager(workdir / "validator.yml")
    assert DEFAULT_CONFIG["rpc"]["port"] == 8899


def test_yaml_file_merges_over_defaults(workdir):
    (workdir / "validator.yml").write_text(
        "rpc:\n  port: 9100\n  bind_address: 10.0.0.5\n"
        "genesis:\n  faucet_lamports: 42\n"
        "paths:\n  ledger_dir: /var/lib/validator/ledger\n"
    )
    config = ConfigManager(workdir / "validator.yml").resolve(workdir)

    assert config.rpc_port == 9100
    assert config.rpc_bind_address == "10.0.0.5"
    assert config.rpc_probe_address == "10.0.0.5"
    assert config.faucet_lamports == 42
    assert config.hashes_per_tick == 100
    assert str(config.ledger_dir) == "/var/lib/validator/ledger"


def test_overrides_win_over_file(workdir):
    (workdir / "validator.yml").write_text("rpc:\n  port: 9100\n")
    manager = ConfigManager(workdir / "validator.yml")
    manager.apply_overrides(rpc_port=9200, stake_lamports=7, ledger_dir=None)
    config = manager.resolve(workdir)

    assert config.rpc_port == 9200
    assert config.stake_lamports == 7
    assert config.ledger_dir == workdir / "ledger"


def test_unknown_override_rejected(workdir):
    with pytest.raises(ConfigFileError):
        ConfigManager(workdir / "validator.yml").apply_overrides(colour="blue")


def test_malformed_yaml_is_configuration_error(workdir):
    (workdir / "validator.yml").write_text("rpc: [unclosed\n")
    with pytest.raises(ConfigFileError):
        ConfigManager(workdir / "validator.yml")


def test_node_config_is_immutable(node_config):
    with pytest.raises(dataclasses.FrozenInstanceError):
        node_config.rpc_port = 1


def test_binaries_found_in_target_release(workdir):
    config = ConfigManager(workdir / "validator.yml").resolve(workdir)

    assert config.bin_dir == workdir / "target" / "release"
    assert config.validator_bin == config.bin_dir / "solana-validator"
    assert config.keygen_bin == config.bin_dir / "solana-keygen"
    assert config.genesis_bin == config.bin_dir / "solana-genesis"


def test_configured_bin_dir_searched_first(workdir, tmp_path_factory):
    other = tmp_path_factory.mktemp("bin").resolve()
    for name in ("solana-validator", "solana-keygen", "solana-genesis"):
        (other / name).write_text("#!/bin/sh\n")
        (other / name).chmod(0o755)

    manager = ConfigManager(workdir / "validator.yml")
    manager.apply_overrides(bin_dir=str(other))
    assert manager.candidate_dirs(workdir)[0] == other
    assert manager.resolve(workdir).validator_bin == other / "solana-validator"


def test_missing_binary_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "")
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    manager = ConfigManager(tmp_path / "validator.yml")
    manager.config["binaries"]["validator"] = "no-such-validator-binary"

    with pytest.raises(BinaryNotFound) as exc:
        manager.resolve(tmp_path)
    assert exc.value.name == "no-such-validator-binary"
    assert tmp_path.resolve() / "target" / "release" in exc.value.searched


def test_non_executable_file_is_skipped(workdir, monkeypatch):
    monkeypatch.setenv("PATH", "")
    monkeypatch.setenv("HOME", str(workdir / "home"))
    (workdir / "target" / "release" / "solana-validator").chmod(0o644)
    manager = ConfigManager(workdir / "validator.yml")
    manager.config["binaries"]["validator"] = "solana-validator"

    if any((d / "solana-validator").exists() for d in manager.candidate_dirs(workdir)[1:]):
        pytest.skip("a real solana-validator is installed on this host")
    with pytest.raises(BinaryNotFound):
        manager.resolve(workdir)


@pytest.mark.parametrize(
    "overrides, holds",
    [
        ({"ledger_dir": "."}, "working directory"),
        ({"ledger_dir": ".."}, "working directory"),
        ({"keys_dir": "ledger/keys"}, "keys directory"),
        ({"ledger_dir": "target"}, "binary directory"),
    ],
)
def test_ledger_dir_must_not_contain_inputs(workdir, overrides, holds):
    manager = ConfigManager(workdir / "validator.yml")
    manager.apply_overrides(**overrides)

    with pytest.raises(ConfigurationError, match=holds):
        manager.resolve(workdir)


def test_config_file_inside_ledger_rejected(workdir):
    (workdir / "ledger").mkdir()
    config_file = workdir / "ledger" / "validator.yml"
    config_file.write_text("rpc:\n  port: 9100\n")

    with pytest.raises(ConfigurationError, match="config file"):
        ConfigManager(config_file).resolve(workdir)
