"""
验证节点进程管理服务。

负责端口冲突检测、启动、健康探测与停止 solana-test-validator 进程。
进程句柄以 ValidatorProcess 显式在调用链中传递，区分“本次运行启动”与“接管已有实例”。
"""

from __future__ import annotations

import os
import signal
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Sequence, TextIO

import httpx
from loguru import logger

from ...config import Config
from ...errors import (
    FilesystemError,
    HealthCheckTimeoutError,
    OrchestrationCancelled,
    PortConflictError,
    PrerequisiteMissingError,
    ToolchainError,
)
from ..schemas import ConflictPolicy, HealthStatus, ProcessOwnership, ValidatorProcess, ValidatorStatus
from .provisioner import atomic_write_text
from .toolchain import Toolchain

HEALTH_REQUEST = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
VALIDATOR_PROCESS_PATTERN = "solana-test-validator"


def _is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def detect_conflict(host: str, port: int) -> bool:
    """通过 TCP 连接探测 RPC 端口是否已有监听者。"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        try:
            return s.connect_ex((host, port)) == 0
        except OSError:
            return False


def read_pid_record(pid_file: Path) -> int | None:
    if not pid_file.exists():
        return None
    try:
        return int(pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError) as e:
        logger.warning(f"PID 记录无法解析，已忽略：{pid_file}，错误：{e}")
        return None


def write_pid_record(pid_file: Path, pid: int) -> None:
    try:
        atomic_write_text(pid_file, f"{pid}\n")
    except OSError as e:
        raise FilesystemError(f"写入 PID 记录失败：{e}", path=pid_file) from e


def _validator_process(config: Config, ownership: ProcessOwnership, pid: int | None, status: HealthStatus) -> ValidatorProcess:
    return ValidatorProcess(
        pid=pid,
        ownership=ownership,
        rpc_url=config.local_rpc_url,
        websocket_url=config.websocket_url,
        faucet_url=config.faucet_url,
        ledger_dir=config.ledger_dir,
        log_file=config.log_file,
        status=status,
    )


def adopt_validator(config: Config) -> ValidatorProcess:
    """接管端口上已存在的实例，不会启动新进程，也不会在退出时停止它。"""
    pid = read_pid_record(config.pid_file)
    logger.info(f"接管已存在的验证节点实例：{config.local_rpc_url}（PID: {pid or '未知'}）")
    return _validator_process(config, ProcessOwnership.ADOPTED, pid, HealthStatus.UNKNOWN)


def terminate_conflicting(config: Config, toolchain: Toolchain) -> None:
    """尽力终止占用端口的进程，然后等待固定的宽限时间。"""
    pid = read_pid_record(config.pid_file)
    if pid is not None and _is_process_running(pid):
        logger.info(f"停止已存在的验证节点（PID: {pid}）")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        config.pid_file.unlink(missing_ok=True)
    else:
        logger.info(f"按进程名停止已存在的验证节点：{VALIDATOR_PROCESS_PATTERN}")
        toolchain.kill_matching(VALIDATOR_PROCESS_PATTERN)
    time.sleep(config.conflict_grace_seconds)


def resolve_conflict(
    config: Config,
    policy: ConflictPolicy,
    toolchain: Toolchain,
    confirm: Callable[[str], bool] | None = None,
) -> ValidatorProcess | None:
    """按策略处理端口冲突。

    返回接管的实例；返回 None 表示端口空闲（或已被腾出），调用方应启动新进程。
    """
    if not detect_conflict(config.rpc_host, config.rpc_port):
        return None

    logger.warning(f"RPC 端口 {config.rpc_port} 上已有验证节点在运行")
    if policy == ConflictPolicy.ASK:
        if confirm is None:
            raise PortConflictError("端口已被占用，且当前无法交互确认处理方式", port=config.rpc_port)
        policy = ConflictPolicy.REPLACE if confirm("是否停止已有实例并重新启动？") else ConflictPolicy.ADOPT

    if policy == ConflictPolicy.ADOPT:
        return adopt_validator(config)
    if policy == ConflictPolicy.REPLACE:
        terminate_conflicting(config, toolchain)
        return None
    raise PortConflictError(
        "端口已被占用，请通过 --on-conflict adopt|replace 显式选择处理方式",
        port=config.rpc_port,
    )


def build_validator_args(config: Config, preload: Sequence[tuple[str, Path]] = ()) -> list[str]:
    args = [
        "--ledger",
        str(config.ledger_dir),
        "--rpc-port",
        str(config.rpc_port),
        "--faucet-port",
        str(config.faucet_port),
        "--quiet",
        "--reset",
        "--limit-ledger-size",
    ]
    for program_id, artifact in preload:
        args.extend(["--bpf-program", program_id, str(artifact)])
    return args


def start_validator(
    config: Config,
    toolchain: Toolchain,
    preload: Sequence[tuple[str, Path]] = (),
) -> ValidatorProcess:
    """启动验证节点子进程并记录 PID。"""
    for program_id, artifact in preload:
        logger.info(f"创世时预加载程序：{program_id} -> {artifact}")
    try:
        with config.log_file.open("w", encoding="utf-8") as sink:
            proc = toolchain.spawn_validator(build_validator_args(config, preload), sink)
    except ToolchainError as e:
        raise PrerequisiteMissingError(f"无法启动验证节点：{e.output}", command=" ".join(e.cmd)) from e
    except OSError as e:
        raise FilesystemError(f"无法打开节点日志文件：{e}", path=config.log_file) from e

    # 调用方拿到 ValidatorProcess 之前，子进程只能在这里回收
    try:
        write_pid_record(config.pid_file, proc.pid)
        logger.info(f"验证节点进程已启动（PID: {proc.pid}），日志：{config.log_file}")
        return _validator_process(config, ProcessOwnership.OWNED, proc.pid, HealthStatus.STARTING)
    except BaseException:
        logger.error(f"验证节点启动后未能完成登记，终止子进程（PID: {proc.pid}）")
        proc.terminate()
        proc.wait()
        raise


def _probe_health(rpc_url: str, timeout_s: float = 2.0) -> bool:
    """向 RPC 端点发送 getHealth，任何 2xx 响应视为健康。"""
    try:
        resp = httpx.post(rpc_url, json=HEALTH_REQUEST, timeout=timeout_s)
    except httpx.HTTPError:
        return False
    return resp.is_success


def wait_healthy(
    process: ValidatorProcess,
    attempts: int = 30,
    interval_s: float = 1.0,
    cancel: threading.Event | None = None,
) -> ValidatorProcess:
    """每个间隔探测一次健康状态，直到成功或用完探测次数。

    每次迭代前检查取消信号，收到后立即抛出 OrchestrationCancelled。
    """
    logger.info(f"等待验证节点就绪（最多 {attempts} 次探测）...")
    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            raise OrchestrationCancelled("等待节点就绪时收到中断信号", attempt=attempt)
        if _probe_health(process.rpc_url):
            process.status = HealthStatus.HEALTHY
            logger.info(f"验证节点已就绪（PID: {process.pid}，第 {attempt} 次探测）")
            return process
        if attempt == attempts:
            break
        if cancel is not None:
            if cancel.wait(interval_s):
                raise OrchestrationCancelled("等待节点就绪时收到中断信号", attempt=attempt)
        else:
            time.sleep(interval_s)

    process.status = HealthStatus.FAILED
    logger.error(f"验证节点在 {attempts} 次探测内未就绪，请检查日志：{process.log_file}")
    raise HealthCheckTimeoutError(
        f"验证节点在 {attempts} 次探测内未就绪",
        log_file=process.log_file,
        attempts=attempts,
    )


def stop_validator(pid_file: Path) -> int | None:
    """向 PID 记录中的进程发送终止信号并删除记录；进程已退出不视为错误。"""
    pid = read_pid_record(pid_file)
    if pid is None:
        pid_file.unlink(missing_ok=True)
        return None
    logger.info(f"停止验证节点（PID: {pid}）")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.info(f"验证节点进程已退出（PID: {pid}）")
    pid_file.unlink(missing_ok=True)
    return pid


def release(process: ValidatorProcess | None, pid_file: Path) -> None:
    """编排退出时的释放动作：只停止本次运行启动的进程。"""
    if process is None or process.ownership != ProcessOwnership.OWNED:
        return
    stop_validator(pid_file)
    process.status = HealthStatus.STOPPED


def get_validator_status(config: Config) -> ValidatorStatus:
    pid = read_pid_record(config.pid_file)
    running = pid is not None and _is_process_running(pid)
    port_in_use = detect_conflict(config.rpc_host, config.rpc_port)
    healthy = port_in_use and _probe_health(config.local_rpc_url)
    return ValidatorStatus(
        running=running,
        pid=pid,
        port_in_use=port_in_use,
        healthy=healthy,
        rpc_url=config.local_rpc_url,
        ledger_dir=str(config.ledger_dir),
        log_file=str(config.log_file),
    )


def follow_log(log_file: Path, out: TextIO, stop: threading.Event, poll_s: float = 0.5) -> None:
    """类似 tail -f：持续输出节点日志，直到 stop 被设置。"""
    try:
        with log_file.open("r", encoding="utf-8", errors="replace") as f:
            while not stop.is_set():
                line = f.readline()
                if line:
                    out.write(line)
                    out.flush()
                    continue
                stop.wait(poll_s)
    except OSError as e:
        raise FilesystemError(f"无法读取节点日志：{e}", path=log_file) from e
