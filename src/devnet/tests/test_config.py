"""
配置加载测试：环境变量、devnet.json 与派生路径。
"""

import json
from pathlib import Path

import pytest

from src.devnet import config as config_module
from src.devnet.config import Config
from src.devnet.orchestrator.schemas import ConflictPolicy, RedeployPolicy


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in (
        "VALIDATOR_PORT",
        "RPC_PORT",
        "SOLANA_RPC_URL",
        "REMOTE_RPC_URL",
        "CONFIG_FILE",
        "CONFLICT_POLICY",
        "PROGRAM_SOURCE_DIRS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = Config()
    assert cfg.local_rpc_url == "http://127.0.0.1:8899"
    assert cfg.websocket_url == "ws://127.0.0.1:8900"
    assert cfg.faucet_url == "http://127.0.0.1:9900"
    assert cfg.pid_file == Path("./.ledger") / "validator.pid"
    assert cfg.agent_wallet_path.name == "agent-wallet.json"
    assert cfg.program_artifact_path.name == "counter.so"
    assert cfg.conflict_policy == ConflictPolicy.ABORT
    assert cfg.redeploy_policy == RedeployPolicy.ABORT


def test_validator_port_from_env(monkeypatch):
    monkeypatch.setenv("VALIDATOR_PORT", "18899")
    monkeypatch.setenv("CONFLICT_POLICY", "adopt")
    cfg = Config()
    assert cfg.rpc_port == 18899
    assert cfg.local_rpc_url == "http://127.0.0.1:18899"
    assert cfg.conflict_policy == ConflictPolicy.ADOPT


def test_remote_rpc_url_from_env(monkeypatch):
    monkeypatch.setenv("REMOTE_RPC_URL", "https://api.testnet.solana.com")
    assert Config().remote_rpc_url == "https://api.testnet.solana.com"


def test_sourced_descriptor_does_not_redirect_remote_url(monkeypatch):
    """source .env.devnet 之后 SOLANA_RPC_URL 指向本地节点，远程部署目标不受影响。"""
    monkeypatch.setenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")
    assert Config().remote_rpc_url == "https://api.devnet.solana.com"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('["a", "b/c"]', [Path("a"), Path("b/c")]),
        ("a, b/c;d", [Path("a"), Path("b/c"), Path("d")]),
        ("", []),
    ],
)
def test_program_source_dirs_parsing(monkeypatch, raw, expected):
    monkeypatch.setenv("PROGRAM_SOURCE_DIRS", raw)
    assert Config().program_source_dirs == expected


def test_json_file_source(tmp_path):
    (tmp_path / "devnet.json").write_text(json.dumps({"program_name": "escrow", "rpc_port": 7799}))
    cfg = Config()
    assert cfg.program_name == "escrow"
    assert cfg.rpc_port == 7799
    assert cfg.program_keypair_path.name == "escrow-keypair.json"


def test_env_overrides_json_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"rpc_port": 7799}))
    monkeypatch.setenv("CONFIG_FILE", str(path))
    monkeypatch.setenv("RPC_PORT", "6699")
    assert Config().rpc_port == 6699


def test_json_file_unknown_keys_are_dropped(tmp_path):
    (tmp_path / "devnet.json").write_text(json.dumps({"rpc_port": 7799, "nodes": ["a"], "linux_url": "x"}))
    json_source = Config.settings_customise_sources(Config, None, None, None, None)[3]
    assert json_source() == {"rpc_port": 7799}
    assert Config().rpc_port == 7799


def test_json_file_non_object_is_ignored(tmp_path):
    (tmp_path / "devnet.json").write_text(json.dumps([1, 2]))
    assert Config().rpc_port == 8899


def test_invalid_json_file_is_ignored(tmp_path):
    (tmp_path / "devnet.json").write_text("{not json")
    assert Config().rpc_port == 8899


def test_get_config_is_cached():
    config_module.get_config.cache_clear()
    try:
        assert config_module.get_config() is config_module.get_config()
    finally:
        config_module.get_config.cache_clear()
