"""
文件功能：
    资源准备：幂等地创建工作目录与钱包密钥文件。

公开接口：
    - ensure_directories(paths) -> list[Path]
    - clean_paths(paths) -> None
    - ensure_identity(name, path, toolchain, funding_sol=0) -> Identity
    - generate_fresh_identity(name, path, toolchain) -> Identity
    - derive_public_address(path, toolchain) -> str
    - fund_identity(identity, url, toolchain, retry_delay) -> None
    - atomic_write_text(path, text) -> None

内部方法：
    - _load_key_material(path) -> bytes
    - _keygen_atomic(path, toolchain) -> None

说明：
    - 密钥文件格式为 solana-keygen 输出的 64 字节 JSON 数组（32 字节种子 + 32 字节公钥）。
    - 已存在的密钥文件只会被复用，不会被覆盖；只有显式的 clean 才会删除。
"""

from __future__ import annotations

import json
import os
import shutil
import time
from pathlib import Path
from typing import Iterable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from loguru import logger

from ...errors import (
    CorruptIdentityError,
    FilesystemError,
    FundingError,
    IdentityGenerationError,
    ToolchainError,
)
from ..schemas import Identity
from .toolchain import Toolchain


def ensure_directories(paths: Iterable[Path]) -> list[Path]:
    """逐个创建目录（已存在则跳过）。"""
    created: list[Path] = []
    for path in paths:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"创建目录失败：{path}，错误：{e}")
            raise FilesystemError(f"创建目录失败：{e}", path=path) from e
        created.append(path)
    logger.info(f"目录已就绪：{', '.join(str(p) for p in created)}")
    return created


def clean_paths(paths: Iterable[Path]) -> None:
    """删除目录或文件。仅在显式请求 clean 时调用。"""
    for path in paths:
        try:
            if path.is_dir():
                shutil.rmtree(path)
                logger.info(f"已删除目录：{path}")
            elif path.exists():
                path.unlink()
                logger.info(f"已删除文件：{path}")
        except OSError as e:
            raise FilesystemError(f"清理失败：{e}", path=path) from e


def atomic_write_text(path: Path, text: str) -> None:
    """先写临时文件再替换，避免并发读取者看到写了一半的内容。"""
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


def _load_key_material(path: Path) -> bytes:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptIdentityError(f"无法读取密钥文件：{e}", path=path) from e
    if (
        not isinstance(raw, list)
        or len(raw) != 64
        or not all(isinstance(b, int) and 0 <= b <= 255 for b in raw)
    ):
        raise CorruptIdentityError("密钥文件格式错误：应为 64 个字节的 JSON 数组", path=path)
    material = bytes(raw)
    # 种子推导出的公钥必须与文件后 32 字节一致
    public = Ed25519PrivateKey.from_private_bytes(material[:32]).public_key()
    if public.public_bytes(Encoding.Raw, PublicFormat.Raw) != material[32:]:
        raise CorruptIdentityError("密钥文件损坏：私钥与公钥不匹配", path=path)
    return material


def derive_public_address(path: Path, toolchain: Toolchain) -> str:
    """读取密钥文件并返回其公钥地址。"""
    _load_key_material(path)
    try:
        address = toolchain.pubkey(path)
    except ToolchainError as e:
        raise CorruptIdentityError(f"无法推导公钥地址：{e.output.strip()}", path=path, command=" ".join(e.cmd)) from e
    if not address:
        raise CorruptIdentityError("solana-keygen 未输出公钥地址", path=path)
    return address


def _keygen_atomic(path: Path, toolchain: Toolchain) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        toolchain.keygen_new(tmp)
        _load_key_material(tmp)
        os.replace(tmp, path)
    except ToolchainError as e:
        raise IdentityGenerationError(
            f"生成密钥失败：{e.output.strip()}", path=path, command=" ".join(e.cmd)
        ) from e
    except CorruptIdentityError as e:
        raise IdentityGenerationError(f"生成的密钥文件无效：{e}", path=path) from e
    except OSError as e:
        raise IdentityGenerationError(f"写入密钥文件失败：{e}", path=path) from e
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


def ensure_identity(name: str, path: Path, toolchain: Toolchain, funding_sol: float = 0) -> Identity:
    """返回已存在的钱包，否则生成新的密钥对并写入。"""
    created = False
    if path.exists():
        logger.info(f"{name} 钱包已存在：{path}")
    else:
        logger.info(f"创建 {name} 钱包：{path}")
        _keygen_atomic(path, toolchain)
        created = True
    address = derive_public_address(path, toolchain)
    logger.info(f"{name} 钱包公钥：{address}")
    return Identity(name=name, path=path, address=address, funding_sol=funding_sol, created=created)


def generate_fresh_identity(name: str, path: Path, toolchain: Toolchain) -> Identity:
    """总是生成新的密钥对，替换同路径下的旧文件。"""
    logger.info(f"生成新的 {name} 密钥对：{path}")
    _keygen_atomic(path, toolchain)
    address = derive_public_address(path, toolchain)
    return Identity(name=name, path=path, address=address, created=True)


def fund_identity(identity: Identity, url: str, toolchain: Toolchain, retry_delay: float = 2.0) -> None:
    """空投测试资金，失败后等待片刻重试一次。"""
    if identity.funding_sol <= 0:
        return
    logger.info(f"为 {identity.name} 钱包空投 {identity.funding_sol:g} SOL：{identity.address}")
    try:
        toolchain.airdrop(identity.funding_sol, identity.address, url)
        return
    except ToolchainError as e:
        logger.warning(f"空投失败，{retry_delay:g} 秒后重试：{e.output.strip()}")
    time.sleep(retry_delay)
    try:
        toolchain.airdrop(identity.funding_sol, identity.address, url)
    except ToolchainError as e:
        logger.error(f"空投重试仍失败：{e.output.strip()}")
        raise FundingError(
            f"为 {identity.name} 钱包空投失败：{e.output.strip()}",
            address=identity.address,
            command=" ".join(e.cmd),
        ) from e
