"""
文件功能：
    构建并部署测试程序，创建程序持有的状态账户，并写出部署记录。

公开接口：
    - locate_program_source(candidates) -> Path | None
    - build_program(config, toolchain) -> Path
    - ensure_program_identity(config, toolchain) -> Identity
    - should_deploy(policy, program_id, url, toolchain, confirm=None) -> bool
    - deploy_with_retry(...) -> tuple[str, int]
    - provision_state_account(...) -> Identity
    - render_deployment_record(deployment, prefix) -> str
    - write_deployment_record(deployment, path, prefix) -> None
    - read_deployment_record(path) -> dict[str, str]
    - detect_network(config, toolchain) -> tuple[NetworkKind, str]
    - resolve_wallet(path) -> Path
    - run_pipeline(...) -> ProgramDeployment

内部方法：
    - _network_label(network, url) -> str
    - _reusable_state_account(...) -> str | None

说明：
    - 构建失败不重试；部署最多尝试 deploy_max_attempts 次，遇到“余额不足”时每次尝试最多追加一次空投。
    - 部署密钥对一经生成即复用，保证程序 ID 在多次部署间保持稳定。
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from dotenv import dotenv_values
from loguru import logger

from ...config import Config
from ...errors import (
    AccountProvisioningError,
    BuildError,
    DeployFailureError,
    FilesystemError,
    IdentityGenerationError,
    PrerequisiteMissingError,
    ToolchainError,
)
from ..schemas import DeploymentState, DeployStep, Identity, NetworkKind, ProgramDeployment, RedeployPolicy
from .provisioner import atomic_write_text, clean_paths, ensure_directories, ensure_identity, generate_fresh_identity
from .toolchain import Toolchain, parse_program_id

INSUFFICIENT_FUNDS = re.compile(r"insufficient funds", re.IGNORECASE)
DEFAULT_CLI_KEYPAIR = Path("~/.config/solana/id.json")


def locate_program_source(candidates: Sequence[Path]) -> Path | None:
    """按顺序查找包含 Cargo.toml 的程序源码目录。"""
    for candidate in candidates:
        if (candidate / "Cargo.toml").is_file():
            logger.info(f"找到程序源码：{candidate}")
            return candidate
    return None


def build_program(config: Config, toolchain: Toolchain) -> Path:
    """构建程序产物；找不到源码时退回到已存在的预构建产物。"""
    artifact = config.program_artifact_path
    source = locate_program_source(config.program_source_dirs)
    if source is None:
        if artifact.exists():
            logger.warning(f"未找到程序源码，使用已有的预构建产物：{artifact}")
            return artifact
        logger.error("未找到程序源码，也没有预构建产物")
        raise BuildError(
            "未找到程序源码，也没有预构建产物",
            candidates=", ".join(str(c) for c in config.program_source_dirs),
            artifact=artifact,
        )

    ensure_directories([config.program_build_dir])
    logger.info(f"构建 {config.program_name} 程序：{source} -> {config.program_build_dir}")
    try:
        toolchain.build_program(source, config.program_build_dir)
    except ToolchainError as e:
        logger.error(f"程序构建失败：{e.output.strip()}")
        raise BuildError(f"程序构建失败：{e.output.strip()}", command=" ".join(e.cmd), source=source) from e

    if not artifact.exists():
        raise BuildError("构建完成但未找到程序产物", artifact=artifact, source=source)
    logger.info(f"程序构建成功：{artifact}（{artifact.stat().st_size} 字节）")
    return artifact


def ensure_program_identity(config: Config, toolchain: Toolchain) -> Identity:
    """确保部署密钥对存在，其地址即程序的永久 ID。"""
    return ensure_identity("program", config.program_keypair_path, toolchain)


def should_deploy(
    policy: RedeployPolicy,
    program_id: str,
    url: str,
    toolchain: Toolchain,
    confirm: Callable[[str], bool] | None = None,
) -> bool:
    """检查程序是否已部署，并按策略决定是否重新部署。"""
    logger.info(f"检查程序是否已部署：{program_id}")
    if not toolchain.program_show(program_id, url):
        return True

    logger.warning(f"程序已部署：{program_id}")
    if policy == RedeployPolicy.ASK:
        if confirm is None:
            raise DeployFailureError("程序已部署，且当前无法交互确认是否重新部署", attempts=0, last_output="", program_id=program_id)
        return confirm("是否重新部署？")
    if policy == RedeployPolicy.SKIP:
        logger.info("沿用已有部署")
        return False
    if policy == RedeployPolicy.REDEPLOY:
        return True
    raise DeployFailureError(
        "程序已部署，请通过 --if-deployed skip|redeploy 显式选择处理方式",
        attempts=0,
        last_output="",
        program_id=program_id,
    )


def deploy_with_retry(
    program_keypair: Path,
    artifact: Path,
    wallet: Identity,
    url: str,
    toolchain: Toolchain,
    max_attempts: int = 3,
    retry_delay: float = 5.0,
    remedial_sol: float = 1,
) -> tuple[str, int]:
    """有限次重试部署，返回 (程序 ID, 实际尝试次数)。"""
    step = DeployStep.ATTEMPT
    attempt = 0
    last_output = ""
    program_id: str | None = None

    while True:
        if step == DeployStep.ATTEMPT:
            attempt += 1
            logger.info(f"部署尝试 {attempt}/{max_attempts}...")
            result = toolchain.program_deploy(program_keypair, artifact, wallet.path, url)
            last_output = result.stdout or ""
            program_id = parse_program_id(last_output)
            step = DeployStep.DONE if program_id else DeployStep.INSPECT_FAILURE

        elif step == DeployStep.INSPECT_FAILURE:
            logger.warning(f"部署尝试 {attempt} 失败")
            if attempt >= max_attempts:
                step = DeployStep.ABORT
            elif INSUFFICIENT_FUNDS.search(last_output):
                step = DeployStep.FUND
            else:
                step = DeployStep.WAIT

        elif step == DeployStep.FUND:
            logger.info(f"部署钱包余额不足，追加空投 {remedial_sol:g} SOL：{wallet.address}")
            try:
                toolchain.airdrop(remedial_sol, wallet.address, url)
            except ToolchainError as e:
                logger.warning(f"追加空投失败，继续重试部署：{e.output.strip()}")
            step = DeployStep.WAIT

        elif step == DeployStep.WAIT:
            logger.info(f"{retry_delay:g} 秒后重试...")
            time.sleep(retry_delay)
            step = DeployStep.ATTEMPT

        elif step == DeployStep.DONE:
            assert program_id is not None
            logger.info(f"程序部署成功：{program_id}")
            return program_id, attempt

        else:
            logger.error(f"程序部署在 {max_attempts} 次尝试后仍失败，最后一次输出：\n{last_output}")
            raise DeployFailureError(
                f"程序部署在 {max_attempts} 次尝试后仍失败：{last_output.strip()}",
                attempts=attempt,
                last_output=last_output,
                artifact=artifact,
            )


def provision_state_account(
    program_id: str,
    wallet: Identity,
    url: str,
    toolchain: Toolchain,
    keypair_path: Path,
    lamports: int,
) -> Identity:
    """生成新的状态账户密钥对，创建账户并将其 owner 设置为程序 ID。"""
    try:
        account = generate_fresh_identity("state-account", keypair_path, toolchain)
    except IdentityGenerationError as e:
        raise AccountProvisioningError(f"生成状态账户密钥失败：{e}", path=keypair_path) from e
    logger.info(f"创建状态账户 {account.address}（{lamports} lamports，owner={program_id}）")
    try:
        toolchain.create_account(keypair_path, lamports, program_id, wallet.path, url)
    except ToolchainError as e:
        logger.error(f"创建状态账户失败：{e.output.strip()}")
        raise AccountProvisioningError(
            f"创建状态账户失败：{e.output.strip()}", command=" ".join(e.cmd), account=account.address
        ) from e
    logger.info(f"状态账户已创建：{account.address}")
    return account


def _network_label(network: NetworkKind, url: str) -> str:
    if network == NetworkKind.LOCAL:
        return "localnet"
    return "devnet" if "devnet" in url else "remote"


def record_prefix(config: Config) -> str:
    return re.sub(r"[^A-Z0-9]", "_", config.program_name.upper())


def render_deployment_record(deployment: ProgramDeployment, prefix: str) -> str:
    lines = [
        "# Test program deployment record",
        f"# Generated at {datetime.now(timezone.utc).isoformat()}",
        "",
        f"{prefix}_PROGRAM_ID={deployment.program_id}",
        f"{prefix}_ACCOUNT={deployment.state_account}",
        f"{prefix}_PROGRAM_SO={deployment.artifact_path}",
        f"{prefix}_KEYPAIR={deployment.program_keypair}",
    ]
    if deployment.state_account_keypair is not None:
        lines.append(f"{prefix}_ACCOUNT_KEYPAIR={deployment.state_account_keypair}")
    lines.extend(
        [
            "",
            f"SOLANA_NETWORK={_network_label(deployment.network, deployment.rpc_url)}",
            f"SOLANA_RPC_URL={deployment.rpc_url}",
        ]
    )
    return "\n".join(lines) + "\n"


def write_deployment_record(deployment: ProgramDeployment, path: Path, prefix: str) -> None:
    try:
        atomic_write_text(path, render_deployment_record(deployment, prefix))
    except OSError as e:
        raise FilesystemError(f"写入部署记录失败：{e}", path=path) from e
    logger.info(f"部署记录已保存：{path}")


def read_deployment_record(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def detect_network(config: Config, toolchain: Toolchain) -> tuple[NetworkKind, str]:
    """根据 solana config 中的 RPC URL 判断目标网络。"""
    try:
        current = toolchain.config_get_url()
    except ToolchainError as e:
        logger.warning(f"读取 solana 配置失败，默认使用远程网络：{e.output.strip()}")
        current = None
    if current and ("localhost" in current or "127.0.0.1" in current):
        network, url = NetworkKind.LOCAL, config.local_rpc_url
    else:
        if current and "devnet" not in current:
            logger.warning(f"未知的 RPC URL：{current}，默认使用远程网络")
        network, url = NetworkKind.REMOTE, config.remote_rpc_url
    logger.info(f"检测到目标网络：{network.value}（{url}）")
    return network, url


def resolve_wallet(path: Path) -> Path:
    """部署钱包不存在时退回到 solana CLI 默认密钥。"""
    if path.exists():
        return path
    fallback = DEFAULT_CLI_KEYPAIR.expanduser()
    if fallback.exists():
        logger.warning(f"钱包不存在：{path}，使用 solana 默认密钥：{fallback}")
        return fallback
    raise PrerequisiteMissingError(
        f"找不到部署钱包：{path}，请先运行 solana-keygen new -o {path}",
        path=path,
    )


def _reusable_state_account(config: Config, program_id: str, url: str, toolchain: Toolchain) -> str | None:
    record = read_deployment_record(config.deployment_record_file)
    prefix = record_prefix(config)
    account = record.get(f"{prefix}_ACCOUNT")
    if record.get(f"{prefix}_PROGRAM_ID") != program_id or not account or account == "None":
        return None
    if not toolchain.account_exists(account, url):
        return None
    logger.info(f"沿用已有状态账户：{account}")
    return account


def run_pipeline(
    config: Config,
    toolchain: Toolchain,
    wallet: Identity | None,
    network: NetworkKind,
    url: str,
    *,
    build: bool = True,
    deploy: bool = True,
    clean: bool = False,
    policy: RedeployPolicy = RedeployPolicy.ABORT,
    confirm: Callable[[str], bool] | None = None,
) -> ProgramDeployment:
    """构建 -> 确定程序 ID -> 部署（带重试） -> 创建状态账户 -> 写部署记录。"""
    deployment = ProgramDeployment(
        program_keypair=config.program_keypair_path,
        artifact_path=config.program_artifact_path,
        network=network,
        rpc_url=url,
    )

    if clean:
        clean_paths([config.program_build_dir])

    if build:
        deployment.artifact_path = build_program(config, toolchain)
    elif not deployment.artifact_path.exists():
        raise BuildError("未找到程序产物，请先构建", artifact=deployment.artifact_path)
    deployment.state = DeploymentState.BUILT

    if not deploy:
        logger.info(f"仅构建，程序产物：{deployment.artifact_path}")
        return deployment
    if wallet is None:
        raise PrerequisiteMissingError("部署需要一个部署钱包")

    program = ensure_program_identity(config, toolchain)
    deployment.program_id = program.address

    try:
        logger.info(f"部署钱包：{wallet.address}，余额：{toolchain.balance(wallet.address, url)}")
    except ToolchainError as e:
        logger.warning(f"查询部署钱包余额失败：{e.output.strip()}")

    state_account: str | None = None
    if should_deploy(policy, program.address, url, toolchain, confirm):
        deployment.state = DeploymentState.DEPLOY_PENDING
        try:
            deployed_id, attempts = deploy_with_retry(
                program.path,
                deployment.artifact_path,
                wallet,
                url,
                toolchain,
                max_attempts=config.deploy_max_attempts,
                retry_delay=config.deploy_retry_delay,
                remedial_sol=config.remedial_airdrop_sol,
            )
        except DeployFailureError:
            deployment.state = DeploymentState.FAILED
            raise
        if deployed_id != program.address:
            logger.warning(f"部署输出的程序 ID 与部署密钥对不一致：{deployed_id} != {program.address}")
        deployment.program_id = deployed_id
        deployment.attempts = attempts
    else:
        state_account = _reusable_state_account(config, program.address, url, toolchain)
    deployment.state = DeploymentState.DEPLOYED

    if state_account is None:
        account = provision_state_account(
            deployment.program_id,
            wallet,
            url,
            toolchain,
            config.state_account_keypair_path,
            config.state_account_lamports,
        )
        deployment.state_account = account.address
        deployment.state_account_keypair = account.path
    else:
        deployment.state_account = state_account
        deployment.state_account_keypair = config.state_account_keypair_path

    write_deployment_record(deployment, config.deployment_record_file, record_prefix(config))
    return deployment
