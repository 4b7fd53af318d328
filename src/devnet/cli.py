"""
命令行入口（Typer）。

命令：
    - start: 启动本地开发链（钱包、节点、可选构建与部署、环境描述）
    - deploy: 构建并部署测试程序到本地或远程网络
    - stop: 停止 PID 记录中的节点
    - status: 查看节点状态与环境描述
    - serve: 启动只读状态接口
"""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger

from .config import get_config
from .errors import DevnetError, OrchestrationCancelled
from .orchestrator.schemas import ConflictPolicy, DeployOptions, NetworkKind, ProcessOwnership, RedeployPolicy, StartOptions
from .orchestrator.services import cancellation_scope, deploy_program, follow_log, release, start_devnet, status, stop_devnet
from .orchestrator.services.environment import connection_info, read_descriptor

app = typer.Typer(
    name="devnet",
    help="本地 Solana 开发链编排工具。",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="日志级别，默认读取 LOG_LEVEL 环境变量。"),
) -> None:
    load_dotenv(Path.cwd() / ".env")
    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.add(sys.stderr, level=level)


def _confirm():
    """仅在交互式终端中提供确认提示，否则 ask 策略视为无法决定。"""
    if not sys.stdin.isatty():
        return None
    return lambda question: typer.confirm(question, default=False)


def _fail(e: DevnetError) -> None:
    typer.secho(f"[{e.stage}] {e}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command()
def start(
    clean: bool = typer.Option(False, "--clean", "-c", help="启动前清理账本、钱包与日志。"),
    build: bool = typer.Option(False, "--build", "-b", help="启动前构建测试程序。"),
    deploy: bool = typer.Option(False, "--deploy", "-d", help="节点就绪后部署测试程序。"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="精简输出，且不跟随节点日志（节点保持在后台运行）。"),
    on_conflict: Optional[ConflictPolicy] = typer.Option(
        None, "--on-conflict", case_sensitive=False, help="RPC 端口已被占用时的处理策略。"
    ),
    if_deployed: Optional[RedeployPolicy] = typer.Option(
        None, "--if-deployed", case_sensitive=False, help="程序已部署时的处理策略。"
    ),
) -> None:
    """启动本地开发链。"""
    if quiet:
        logger.remove()
        logger.add(sys.stderr, level="WARNING")

    config = get_config()
    options = StartOptions(
        clean=clean,
        build=build,
        deploy=deploy,
        quiet=quiet,
        conflict_policy=on_conflict,
        redeploy_policy=if_deployed,
    )
    cancel = threading.Event()
    try:
        with cancellation_scope(cancel):
            result = start_devnet(config, options, cancel=cancel, confirm=_confirm())

            typer.secho("本地开发链已就绪", fg=typer.colors.GREEN)
            for line in connection_info(config, result.validator, result.descriptor_path):
                typer.echo(line)
            if result.deployment is not None:
                typer.echo(f"Program ID:    {result.deployment.program_id}")
                typer.echo(f"State account: {result.deployment.state_account}")

            if result.validator.ownership != ProcessOwnership.OWNED:
                typer.echo("使用已存在的验证节点实例，本次不会停止它")
                return
            if quiet:
                typer.echo("节点在后台运行，使用 devnet stop 停止")
                return

            typer.echo(f"节点日志（{result.validator.log_file}），按 Ctrl+C 停止节点：")
            try:
                follow_log(result.validator.log_file, sys.stdout, cancel)
            except OrchestrationCancelled:
                # 节点就绪后的 Ctrl+C 是正常的停止方式
                typer.echo("正在停止验证节点...")
            finally:
                release(result.validator, config.pid_file)
    except OrchestrationCancelled as e:
        typer.secho(f"已中断：{e}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=130)
    except DevnetError as e:
        _fail(e)


@app.command(name="deploy")
def deploy_cmd(
    wallet: Optional[Path] = typer.Option(None, "--wallet", "-w", help="部署钱包路径，默认使用 agent 钱包。"),
    network: Optional[NetworkKind] = typer.Option(
        None, "--network", "-n", case_sensitive=False, help="目标网络，默认根据 solana config 自动检测。"
    ),
    build_only: bool = typer.Option(False, "--build-only", "-b", help="只构建，不部署。"),
    deploy_only: bool = typer.Option(False, "--deploy-only", "-d", help="不构建，直接部署已有产物。"),
    clean: bool = typer.Option(False, "--clean", "-c", help="构建前清理构建目录。"),
    if_deployed: Optional[RedeployPolicy] = typer.Option(
        None, "--if-deployed", case_sensitive=False, help="程序已部署时的处理策略。"
    ),
) -> None:
    """构建并部署测试程序。"""
    if build_only and deploy_only:
        typer.secho("--build-only 与 --deploy-only 不能同时使用", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    config = get_config()
    options = DeployOptions(
        wallet=wallet,
        network=network,
        build=not deploy_only,
        deploy=not build_only,
        clean=clean,
        redeploy_policy=if_deployed,
    )
    try:
        with cancellation_scope(threading.Event()):
            deployment = deploy_program(config, options, confirm=_confirm())
    except OrchestrationCancelled as e:
        typer.secho(f"已中断：{e}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=130)
    except DevnetError as e:
        _fail(e)
        return

    if not options.deploy:
        typer.secho("构建完成", fg=typer.colors.GREEN)
        typer.echo(f"Program binary:  {deployment.artifact_path}")
        typer.echo(f"部署请运行：devnet deploy --deploy-only --wallet {wallet or config.agent_wallet_path}")
        return

    typer.secho("部署完成", fg=typer.colors.GREEN)
    typer.echo(f"Program ID:      {deployment.program_id}")
    typer.echo(f"State account:   {deployment.state_account}")
    typer.echo(f"Network:         {deployment.network.value}")
    typer.echo(f"RPC URL:         {deployment.rpc_url}")
    typer.echo(f"Environment:     {config.deployment_record_file}")


@app.command()
def stop() -> None:
    """停止 PID 记录中的节点。"""
    pid = stop_devnet(get_config())
    if pid is None:
        typer.echo("没有找到 PID 记录，节点可能未由本工具启动")
    else:
        typer.secho(f"已停止验证节点（PID: {pid}）", fg=typer.colors.GREEN)


@app.command(name="status")
def status_cmd() -> None:
    """查看节点状态与环境描述。"""
    config = get_config()
    typer.echo(status(config).model_dump_json(indent=2))
    for key, value in read_descriptor(config.descriptor_file).items():
        typer.echo(f"{key}={value}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="监听地址。"),
    port: int = typer.Option(8000, help="监听端口。"),
) -> None:
    """启动只读状态接口。"""
    import uvicorn

    logger.info("Devnet status API, start running!")
    uvicorn.run("src.devnet.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
