"""
环境描述汇总服务。

将网络、钱包、部署等相互独立的可选子记录合并为一个描述，
在内存中构建完成后一次性写出；写入失败只报告，不回滚已完成的阶段。
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from dotenv import dotenv_values
from loguru import logger

from ...config import Config
from ...errors import AggregationWriteError
from ..schemas import EnvironmentDescriptor, Identity, ProgramDeployment, ValidatorProcess
from .provisioner import atomic_write_text

DESCRIPTOR_HEADER = "Local devnet environment\nGenerated by devnet start"


def network_entries(validator: ValidatorProcess) -> dict[str, str]:
    return {
        "SOLANA_RPC_URL": validator.rpc_url,
        "SOLANA_WS_URL": validator.websocket_url,
        "SOLANA_NETWORK": "localnet",
        "VALIDATOR_PID": str(validator.pid) if validator.pid is not None else "",
    }


def identity_entries(identities: Iterable[Identity]) -> dict[str, str]:
    entries: dict[str, str] = {}
    for identity in identities:
        key = identity.name.upper().replace("-", "_")
        entries[f"{key}_WALLET_PATH"] = str(identity.path)
        entries[f"{key}_WALLET_PUBKEY"] = identity.address
    return entries


def deployment_entries(deployment: ProgramDeployment | None, prefix: str) -> dict[str, str]:
    """未部署时返回空记录，相关 key 不会出现在描述中。"""
    if deployment is None or deployment.program_id is None:
        return {}
    return {
        f"{prefix}_PROGRAM_ID": deployment.program_id,
        f"{prefix}_ACCOUNT": deployment.state_account or "",
    }


def build_descriptor(
    validator: ValidatorProcess,
    identities: Iterable[Identity],
    deployment: ProgramDeployment | None,
    prefix: str,
) -> EnvironmentDescriptor:
    return (
        EnvironmentDescriptor()
        .merge(network_entries(validator))
        .merge(identity_entries(identities))
        .merge(deployment_entries(deployment, prefix))
    )


def write_descriptor(descriptor: EnvironmentDescriptor, path: Path) -> Path:
    """整体覆盖写入描述文件。"""
    header = f"{DESCRIPTOR_HEADER}\n{datetime.now(timezone.utc).isoformat()}"
    try:
        atomic_write_text(path, descriptor.render(header))
    except OSError as e:
        logger.error(f"写入环境描述失败：{path}，错误：{e}")
        raise AggregationWriteError(f"写入环境描述失败：{e}", path=path) from e
    logger.info(f"环境描述已写入：{path}")
    return path


def read_descriptor(path: Path) -> dict[str, str]:
    """按行解析 KEY=VALUE，后出现的同名 key 覆盖先前的值。"""
    if not path.exists():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def connection_info(config: Config, validator: ValidatorProcess, descriptor_path: Path | None) -> list[str]:
    """面向人阅读的连接信息。"""
    lines = [
        f"RPC URL:       {validator.rpc_url}",
        f"WebSocket:     {validator.websocket_url}",
        f"Faucet:        {validator.faucet_url}",
        "",
        f"Agent Wallet:  {config.agent_wallet_path}",
        f"Receiver:      {config.receiver_wallet_path}",
        "",
        f"Environment:   {descriptor_path if descriptor_path else '(未写入)'}",
        f"Log file:      {validator.log_file}",
        f"Validator PID: {validator.pid if validator.pid is not None else 'Unknown'}",
    ]
    if descriptor_path:
        lines.extend(["", "使用方式：", f"  source {descriptor_path}"])
    return lines
