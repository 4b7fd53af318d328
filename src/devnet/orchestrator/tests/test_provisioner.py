"""
资源准备服务测试：目录、钱包密钥文件与空投。
"""

import json

import pytest

from src.devnet.errors import CorruptIdentityError, FilesystemError, FundingError, IdentityGenerationError
from src.devnet.orchestrator.schemas import Identity
from src.devnet.orchestrator.services import provisioner


def test_ensure_directories_is_idempotent(tmp_path):
    paths = [tmp_path / "a" / "b", tmp_path / "c"]
    provisioner.ensure_directories(paths)
    provisioner.ensure_directories(paths)
    assert all(p.is_dir() for p in paths)


def test_ensure_directories_reports_filesystem_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(FilesystemError) as exc:
        provisioner.ensure_directories([blocker / "sub"])
    assert "sub" in str(exc.value)


def test_ensure_identity_twice_writes_once(tmp_path, toolchain):
    path = tmp_path / "wallets" / "agent-wallet.json"
    first = provisioner.ensure_identity("agent", path, toolchain)
    content = path.read_text()
    second = provisioner.ensure_identity("agent", path, toolchain)

    assert first.address == second.address
    assert first.created is True
    assert second.created is False
    assert toolchain.call_names().count("keygen_new") == 1
    assert path.read_text() == content


def test_ensure_identity_reuses_existing_file(tmp_path, toolchain, keypair_writer):
    path = tmp_path / "existing.json"
    public = keypair_writer(path)
    identity = provisioner.ensure_identity("receiver", path, toolchain, funding_sol=50)
    assert identity.address == public.hex()
    assert identity.funding_sol == 50
    assert "keygen_new" not in toolchain.call_names()


def test_ensure_identity_generation_failure_leaves_no_file(tmp_path, toolchain):
    toolchain.keygen_error = "disk full"
    path = tmp_path / "agent-wallet.json"
    with pytest.raises(IdentityGenerationError) as exc:
        provisioner.ensure_identity("agent", path, toolchain)
    assert "disk full" in str(exc.value)
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps(["a"] * 64),
        json.dumps([300] * 64),
    ],
)
def test_derive_public_address_rejects_malformed(tmp_path, toolchain, content):
    path = tmp_path / "bad.json"
    path.write_text(content)
    with pytest.raises(CorruptIdentityError):
        provisioner.derive_public_address(path, toolchain)


def test_derive_public_address_rejects_mismatched_halves(tmp_path, toolchain, keypair_writer):
    a, b = tmp_path / "a.json", tmp_path / "b.json"
    keypair_writer(a)
    keypair_writer(b)
    mixed = json.loads(a.read_text())[:32] + json.loads(b.read_text())[32:]
    bad = tmp_path / "mixed.json"
    bad.write_text(json.dumps(mixed))
    with pytest.raises(CorruptIdentityError, match="不匹配"):
        provisioner.derive_public_address(bad, toolchain)


def test_derive_public_address_missing_file(tmp_path, toolchain):
    with pytest.raises(CorruptIdentityError):
        provisioner.derive_public_address(tmp_path / "missing.json", toolchain)


def test_generate_fresh_identity_replaces_file(tmp_path, toolchain, keypair_writer):
    path = tmp_path / "account.json"
    old = keypair_writer(path)
    fresh = provisioner.generate_fresh_identity("state-account", path, toolchain)
    assert fresh.address != old.hex()


def test_fund_identity_retries_once(tmp_path, toolchain):
    identity = Identity(name="agent", path=tmp_path / "a.json", address="abc", funding_sol=100)
    toolchain.airdrop_errors = 1
    provisioner.fund_identity(identity, "http://127.0.0.1:8899", toolchain, retry_delay=0)
    assert toolchain.call_names().count("airdrop") == 2


def test_fund_identity_fails_after_retry(tmp_path, toolchain):
    identity = Identity(name="agent", path=tmp_path / "a.json", address="abc", funding_sol=100)
    toolchain.airdrop_errors = 2
    with pytest.raises(FundingError):
        provisioner.fund_identity(identity, "http://127.0.0.1:8899", toolchain, retry_delay=0)


def test_fund_identity_skips_zero_amount(tmp_path, toolchain):
    identity = Identity(name="program", path=tmp_path / "p.json", address="abc")
    provisioner.fund_identity(identity, "http://127.0.0.1:8899", toolchain, retry_delay=0)
    assert "airdrop" not in toolchain.call_names()


def test_atomic_write_text_overwrites(tmp_path):
    path = tmp_path / "out" / "record.env"
    provisioner.atomic_write_text(path, "A=1\nB=2\n")
    provisioner.atomic_write_text(path, "C=3\n")
    assert path.read_text() == "C=3\n"
    assert sorted(p.name for p in path.parent.iterdir()) == ["record.env"]


def test_clean_paths_removes_dirs_and_files(tmp_path):
    d = tmp_path / "ledger"
    (d / "nested").mkdir(parents=True)
    f = tmp_path / "validator.log"
    f.write_text("log")
    provisioner.clean_paths([d, f, tmp_path / "missing"])
    assert not d.exists()
    assert not f.exists()
