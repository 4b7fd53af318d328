"""
编排过程中的错误分类。

每个错误都带有失败的阶段名与可复现的上下文（调用的命令、相关文件路径），
底层的子进程失败或外部工具的异常输出会被包装为这里的某一类错误。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence


class DevnetError(RuntimeError):
    stage = "devnet"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        extra = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{base} ({extra})"


class ToolchainError(RuntimeError):
    """外部命令以非零状态退出。总会被调用方重新包装为具体的 DevnetError。"""

    def __init__(self, cmd: Sequence[str], returncode: int, output: str) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        super().__init__(f"命令执行失败（退出码 {returncode}）：{' '.join(self.cmd)}")


class PrerequisiteMissingError(DevnetError):
    stage = "prerequisites"


class FilesystemError(DevnetError):
    stage = "filesystem"


class IdentityGenerationError(DevnetError):
    stage = "identity"


class CorruptIdentityError(DevnetError):
    stage = "identity"


class FundingError(DevnetError):
    stage = "funding"


class PortConflictError(DevnetError):
    stage = "port-conflict"


class HealthCheckTimeoutError(DevnetError):
    stage = "health-check"

    def __init__(self, message: str, log_file: Path, attempts: int, **context: Any) -> None:
        super().__init__(message, log_file=log_file, attempts=attempts, **context)
        self.log_file = log_file
        self.attempts = attempts


class BuildError(DevnetError):
    stage = "build"


class DeployFailureError(DevnetError):
    stage = "deploy"

    def __init__(self, message: str, attempts: int, last_output: str, **context: Any) -> None:
        super().__init__(message, attempts=attempts, **context)
        self.attempts = attempts
        self.last_output = last_output


class AccountProvisioningError(DevnetError):
    stage = "state-account"


class AggregationWriteError(DevnetError):
    stage = "environment"


class OrchestrationCancelled(DevnetError):
    stage = "cancelled"
