"""
本地开发链编排服务模块集合。

此包包含资源准备、节点进程管理、程序部署与环境汇总的服务实现，按功能拆分以提高可维护性。
"""

from .session import cancellation_scope, deploy_program, start_devnet, status, stop_devnet
from .validator_process import follow_log, release

__all__ = [
    "cancellation_scope",
    "deploy_program",
    "start_devnet",
    "status",
    "stop_devnet",
    "follow_log",
    "release",
]
