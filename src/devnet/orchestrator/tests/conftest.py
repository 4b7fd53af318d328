"""
测试公共夹具：隔离的配置与不依赖真实 Solana 工具链的假工具链。
"""

import json
import subprocess
import sys
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from src.devnet.config import Config
from src.devnet.errors import ToolchainError


def write_keypair(path: Path) -> bytes:
    """写入与 solana-keygen 相同格式的 64 字节 JSON 数组，返回公钥字节。"""
    key = Ed25519PrivateKey.generate()
    seed = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    path.write_text(json.dumps(list(seed + public)), encoding="utf-8")
    return public


class FakeToolchain:
    """记录调用顺序的假工具链，行为可由测试逐项调整。"""

    def __init__(self, config: Config | None = None):
        self.config = config
        self.calls: list[tuple] = []
        self.deploy_outputs: list[str] = []
        self.deployed: set[str] = set()
        self.accounts: set[str] = set()
        self.keygen_error: str | None = None
        self.airdrop_errors = 0
        self.build_error: str | None = None
        self.create_account_error: str | None = None
        self.config_url = "http://127.0.0.1:8899"
        self.processes: list[subprocess.Popen] = []

    def _fail(self, cmd, output):
        raise ToolchainError(cmd, 1, output)

    def keygen_new(self, outfile: Path) -> None:
        self.calls.append(("keygen_new", Path(outfile)))
        if self.keygen_error:
            self._fail(["solana-keygen", "new"], self.keygen_error)
        write_keypair(Path(outfile))

    def pubkey(self, keypair: Path) -> str:
        data = json.loads(Path(keypair).read_text(encoding="utf-8"))
        return bytes(data[32:]).hex()

    def airdrop(self, amount, address, url) -> None:
        self.calls.append(("airdrop", amount, address))
        if self.airdrop_errors > 0:
            self.airdrop_errors -= 1
            self._fail(["solana", "airdrop"], "airdrop request failed")

    def balance(self, address, url) -> str:
        return "100 SOL"

    def config_set_url(self, url) -> None:
        self.calls.append(("config_set_url", url))

    def config_get_url(self):
        return self.config_url

    def build_program(self, source_dir: Path, out_dir: Path) -> None:
        self.calls.append(("build_program", Path(source_dir)))
        if self.build_error:
            self._fail(["cargo", "build-bpf"], self.build_error)
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / "counter.so").write_bytes(b"\x7fELF")
        keypair = out_dir / "counter-keypair.json"
        if not keypair.exists():
            write_keypair(keypair)

    def program_deploy(self, program_keypair, artifact, wallet, url):
        self.calls.append(("program_deploy", Path(program_keypair)))
        if self.deploy_outputs:
            output = self.deploy_outputs.pop(0)
        else:
            output = f"Program Id: {self.pubkey(program_keypair)}\n"
        if "Program Id:" in output:
            self.deployed.add(self.pubkey(program_keypair))
        return subprocess.CompletedProcess(["solana", "program", "deploy"], 0 if "Program Id:" in output else 1, output)

    def program_show(self, program_id, url) -> bool:
        self.calls.append(("program_show", program_id))
        return program_id in self.deployed

    def account_exists(self, address, url) -> bool:
        return address in self.accounts

    def create_account(self, account_keypair, lamports, owner, wallet, url) -> None:
        self.calls.append(("create_account", lamports, owner))
        if self.create_account_error:
            self._fail(["solana", "create-account"], self.create_account_error)
        self.accounts.add(self.pubkey(account_keypair))

    def spawn_validator(self, args, log_sink):
        self.calls.append(("spawn_validator", list(args)))
        proc = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(60)"],
            stdout=log_sink,
            stderr=subprocess.STDOUT,
        )
        self.processes.append(proc)
        return proc

    def kill_matching(self, pattern) -> None:
        self.calls.append(("kill_matching", pattern))

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    monkeypatch.chdir(tmp_path)
    return Config(
        ledger_dir=tmp_path / ".ledger",
        wallets_dir=tmp_path / "wallets",
        log_file=tmp_path / "validator.log",
        program_build_dir=tmp_path / "target" / "deploy",
        program_source_dirs=[tmp_path / "programs" / "counter"],
        descriptor_file=tmp_path / ".env.devnet",
        deployment_record_file=tmp_path / ".env.program",
        health_check_attempts=5,
        health_check_interval=0,
        conflict_grace_seconds=0,
        deploy_retry_delay=0,
        airdrop_retry_delay=0,
    )


@pytest.fixture
def toolchain(config):
    fake = FakeToolchain(config)
    yield fake
    for proc in fake.processes:
        if proc.poll() is None:
            proc.kill()
        proc.wait(timeout=5)


@pytest.fixture
def program_source(config) -> Path:
    source = config.program_source_dirs[0]
    source.mkdir(parents=True)
    (source / "Cargo.toml").write_text('[package]\nname = "counter"\n', encoding="utf-8")
    return source


@pytest.fixture
def keypair_writer():
    return write_keypair
