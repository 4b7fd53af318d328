"""
文件功能：
    定义本地开发链编排相关的公开数据模型（Pydantic）与枚举。

公开接口：
    - HealthStatus / ProcessOwnership: 验证节点进程的健康状态与归属
    - ConflictPolicy / RedeployPolicy: 端口冲突与重复部署的显式处理策略
    - NetworkKind / DeploymentState / DeployStep: 部署目标网络、部署状态与重试状态机步骤
    - ValidatorProcess: 验证节点进程
    - Identity: 持久化到磁盘的钱包密钥对
    - ProgramDeployment: 链上程序部署结果
    - EnvironmentDescriptor: 汇总后的环境描述
    - ValidatorStatus: 状态查询接口返回的数据
    - StartOptions / StartResult / DeployOptions: 编排入口的入参与结果

内部方法：
    无
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPED = "stopped"


class ProcessOwnership(str, Enum):
    OWNED = "owned"
    ADOPTED = "adopted"


class ConflictPolicy(str, Enum):
    ADOPT = "adopt"
    REPLACE = "replace"
    ABORT = "abort"
    ASK = "ask"


class RedeployPolicy(str, Enum):
    SKIP = "skip"
    REDEPLOY = "redeploy"
    ABORT = "abort"
    ASK = "ask"


class NetworkKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class DeploymentState(str, Enum):
    NOT_BUILT = "not_built"
    BUILT = "built"
    DEPLOY_PENDING = "deploy_pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


class DeployStep(str, Enum):
    """部署重试循环的状态机步骤。"""

    ATTEMPT = "attempt"
    INSPECT_FAILURE = "inspect_failure"
    FUND = "fund"
    WAIT = "wait"
    DONE = "done"
    ABORT = "abort"


class ValidatorProcess(BaseModel):
    """本次编排运行所持有（或接管）的验证节点。"""

    pid: int | None = Field(default=None, description="进程 PID，接管的外部实例可能未知")
    ownership: ProcessOwnership = Field(description="由本次运行启动，还是接管已存在的实例")
    rpc_url: str = Field(description="RPC 端点")
    websocket_url: str = Field(description="WebSocket 端点")
    faucet_url: str = Field(description="水龙头端点")
    ledger_dir: Path = Field(description="账本目录")
    log_file: Path = Field(description="节点日志文件")
    status: HealthStatus = Field(default=HealthStatus.UNKNOWN, description="健康状态")


class Identity(BaseModel):
    """持久化到磁盘的钱包。"""

    name: str = Field(description="逻辑名称，如 agent、receiver")
    path: Path = Field(description="密钥文件路径")
    address: str = Field(description="由密钥文件推导出的公钥地址")
    funding_sol: float = Field(default=0, description="请求空投的 SOL 数量")
    created: bool = Field(default=False, description="本次调用是否新生成了密钥文件")


class ProgramDeployment(BaseModel):
    """链上程序实例。"""

    program_id: str | None = Field(default=None, description="由部署密钥对推导出的程序 ID")
    program_keypair: Path = Field(description="部署密钥对路径")
    artifact_path: Path = Field(description="程序二进制产物路径")
    state: DeploymentState = Field(default=DeploymentState.NOT_BUILT, description="部署状态")
    state_account: str | None = Field(default=None, description="程序持有的状态账户地址")
    state_account_keypair: Path | None = Field(default=None, description="状态账户密钥对路径")
    network: NetworkKind = Field(default=NetworkKind.LOCAL, description="目标网络")
    rpc_url: str = Field(description="目标网络 RPC 端点")
    attempts: int = Field(default=0, description="本次实际执行的部署尝试次数")


class EnvironmentDescriptor(BaseModel):
    """汇总后的环境描述：符号名 -> 字符串值，按写入顺序输出。"""

    entries: dict[str, str] = Field(default_factory=dict, description="KEY=VALUE 条目")

    def merge(self, sub: dict[str, str]) -> "EnvironmentDescriptor":
        """合并一个可选的子记录，空值不写入，保证按 key 是否存在判断特性是否可用。"""
        for key, value in sub.items():
            if value is None or value == "":
                continue
            self.entries[key] = str(value)
        return self

    def render(self, header: str | None = None) -> str:
        lines: list[str] = []
        if header:
            lines.extend(f"# {h}" for h in header.splitlines())
            lines.append("")
        lines.extend(f"{k}={v}" for k, v in self.entries.items())
        return "\n".join(lines) + "\n"


class ValidatorStatus(BaseModel):
    """验证节点运行状态。"""

    running: bool = Field(description="PID 记录对应的进程是否存活")
    pid: int | None = Field(default=None, description="PID 记录中的进程号")
    port_in_use: bool = Field(description="RPC 端口是否已被监听")
    healthy: bool = Field(description="最近一次健康探测是否成功")
    rpc_url: str = Field(description="RPC 端点")
    ledger_dir: str = Field(description="账本目录")
    log_file: str = Field(description="节点日志文件")


class StartOptions(BaseModel):
    clean: bool = False
    build: bool = False
    deploy: bool = False
    quiet: bool = False
    conflict_policy: ConflictPolicy | None = Field(default=None, description="为空时使用配置中的策略")
    redeploy_policy: RedeployPolicy | None = Field(default=None, description="为空时使用配置中的策略")


class DeployOptions(BaseModel):
    wallet: Path | None = Field(default=None, description="部署钱包，为空时使用 agent 钱包")
    network: NetworkKind | None = Field(default=None, description="为空时根据 solana config 自动检测")
    build: bool = True
    deploy: bool = True
    clean: bool = False
    redeploy_policy: RedeployPolicy | None = None


class StartResult(BaseModel):
    validator: ValidatorProcess
    identities: list[Identity] = Field(default_factory=list)
    deployment: ProgramDeployment | None = None
    descriptor_path: Path | None = Field(default=None, description="写入失败时为空")
    descriptor: EnvironmentDescriptor = Field(default_factory=EnvironmentDescriptor)
