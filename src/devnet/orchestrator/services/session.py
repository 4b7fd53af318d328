"""
编排会话：按依赖顺序串联资源准备、节点进程、程序部署与环境汇总。

公开接口：
    - cancellation_scope(cancel): 将 SIGINT/SIGTERM 转换为 OrchestrationCancelled
    - start_devnet(config, options, ...) -> StartResult
    - deploy_program(config, options, ...) -> ProgramDeployment
    - stop_devnet(config) -> int | None
    - status(config) -> ValidatorStatus
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger

from ...config import Config
from ...errors import (
    AggregationWriteError,
    CorruptIdentityError,
    IdentityGenerationError,
    OrchestrationCancelled,
    ToolchainError,
)
from ..schemas import (
    DeployOptions,
    Identity,
    NetworkKind,
    ProgramDeployment,
    StartOptions,
    StartResult,
    ValidatorProcess,
    ValidatorStatus,
)
from .deployment import build_program, detect_network, record_prefix, resolve_wallet, run_pipeline
from .environment import build_descriptor, write_descriptor
from .provisioner import clean_paths, derive_public_address, ensure_directories, ensure_identity, fund_identity
from .toolchain import Toolchain, check_prerequisites
from .validator_process import (
    get_validator_status,
    release,
    resolve_conflict,
    start_validator,
    stop_validator,
    wait_healthy,
)

START_TOOLS = ("solana", "solana-keygen", "solana-test-validator")
DEPLOY_TOOLS = ("solana", "solana-keygen")
BUILD_TOOLS = ("cargo",)


@contextmanager
def cancellation_scope(cancel: threading.Event) -> Iterator[threading.Event]:
    """在作用域内收到 SIGINT/SIGTERM 时设置 cancel 并抛出 OrchestrationCancelled。"""
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum, frame):
        cancel.set()
        raise OrchestrationCancelled(f"收到信号 {signal.Signals(signum).name}，正在清理", signal=signum)

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _provision_wallets(config: Config, toolchain: Toolchain) -> list[Identity]:
    """agent 与 receiver 钱包互不影响：单个钱包失败时先完成另一个，再抛出第一个错误。"""
    identities: list[Identity] = []
    errors: list[Exception] = []
    for name, path, funding in (
        ("agent", config.agent_wallet_path, config.agent_funding_sol),
        ("receiver", config.receiver_wallet_path, config.receiver_funding_sol),
    ):
        try:
            identities.append(ensure_identity(name, path, toolchain, funding_sol=funding))
        except (IdentityGenerationError, CorruptIdentityError) as e:
            logger.error(f"{name} 钱包准备失败：{e}")
            errors.append(e)
    if errors:
        raise errors[0]
    return identities


def _genesis_preload(config: Config, toolchain: Toolchain) -> list[tuple[str, Path]]:
    artifact = config.program_artifact_path
    keypair = config.program_keypair_path
    if not artifact.exists():
        return []
    if not keypair.exists():
        logger.warning(f"未找到程序密钥对，程序不会在创世时预加载：{keypair}")
        return []
    return [(derive_public_address(keypair, toolchain), artifact)]


def _pin_cli_url(toolchain: Toolchain, url: str) -> None:
    try:
        toolchain.config_set_url(url)
    except ToolchainError as e:
        logger.warning(f"设置 solana CLI 的 RPC URL 失败：{e.output.strip()}")


def start_devnet(
    config: Config,
    options: StartOptions,
    toolchain: Toolchain | None = None,
    cancel: threading.Event | None = None,
    confirm: Callable[[str], bool] | None = None,
) -> StartResult:
    """启动本地开发链并返回汇总结果。

    任何致命错误或取消信号都会先停止本次运行启动的节点，再向上抛出。
    成功返回时节点保持运行，由调用方决定何时停止。
    """
    toolchain = toolchain or Toolchain()
    check_prerequisites([*START_TOOLS, *(BUILD_TOOLS if options.build else ())])

    if options.clean:
        logger.info("清理账本、钱包与日志...")
        clean_paths([config.ledger_dir, config.wallets_dir, config.log_file])

    conflict_policy = options.conflict_policy or config.conflict_policy
    redeploy_policy = options.redeploy_policy or config.redeploy_policy

    validator: ValidatorProcess | None = resolve_conflict(config, conflict_policy, toolchain, confirm)
    completed = False
    try:
        ensure_directories([config.ledger_dir, config.wallets_dir, config.log_file.resolve().parent])
        identities = _provision_wallets(config, toolchain)

        if options.build:
            build_program(config, toolchain)

        if validator is None:
            preload = _genesis_preload(config, toolchain) if options.build and not options.deploy else []
            validator = start_validator(config, toolchain, preload)

        validator = wait_healthy(
            validator,
            attempts=config.health_check_attempts,
            interval_s=config.health_check_interval,
            cancel=cancel,
        )
        _pin_cli_url(toolchain, validator.rpc_url)

        for identity in identities:
            fund_identity(identity, validator.rpc_url, toolchain, retry_delay=config.airdrop_retry_delay)

        deployment: ProgramDeployment | None = None
        if options.deploy:
            deployment = run_pipeline(
                config,
                toolchain,
                identities[0],
                NetworkKind.LOCAL,
                validator.rpc_url,
                build=False,
                policy=redeploy_policy,
                confirm=confirm,
            )

        descriptor = build_descriptor(validator, identities, deployment, record_prefix(config))
        descriptor_path: Path | None = None
        try:
            descriptor_path = write_descriptor(descriptor, config.descriptor_file)
        except AggregationWriteError as e:
            logger.error(f"环境描述未写入，已完成的阶段不受影响：{e}")

        completed = True
        logger.info("本地开发链已就绪")
        return StartResult(
            validator=validator,
            identities=identities,
            deployment=deployment,
            descriptor_path=descriptor_path,
            descriptor=descriptor,
        )
    finally:
        if not completed:
            release(validator, config.pid_file)


def deploy_program(
    config: Config,
    options: DeployOptions,
    toolchain: Toolchain | None = None,
    confirm: Callable[[str], bool] | None = None,
) -> ProgramDeployment:
    """独立的部署入口：可部署到本地节点或远程网络。"""
    toolchain = toolchain or Toolchain()
    check_prerequisites([*DEPLOY_TOOLS, *(BUILD_TOOLS if options.build else ())])

    if options.network is None:
        network, url = detect_network(config, toolchain)
    elif options.network == NetworkKind.LOCAL:
        network, url = NetworkKind.LOCAL, config.local_rpc_url
    else:
        network, url = NetworkKind.REMOTE, config.remote_rpc_url
    _pin_cli_url(toolchain, url)

    wallet: Identity | None = None
    if options.deploy:
        wallet_path = resolve_wallet(options.wallet or config.agent_wallet_path)
        wallet = Identity(name="deployer", path=wallet_path, address=derive_public_address(wallet_path, toolchain))

    return run_pipeline(
        config,
        toolchain,
        wallet,
        network,
        url,
        build=options.build,
        deploy=options.deploy,
        clean=options.clean,
        policy=options.redeploy_policy or config.redeploy_policy,
        confirm=confirm,
    )


def stop_devnet(config: Config) -> int | None:
    """供另一次独立调用停止节点：读取 PID 记录并发送终止信号。"""
    return stop_validator(config.pid_file)


def status(config: Config) -> ValidatorStatus:
    return get_validator_status(config)
