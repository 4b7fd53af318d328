"""
文件功能：
    本地开发链的 FastAPI 路由：暴露节点状态、环境描述查询与停止接口。

公开接口：
    - GET /devnet/status -> ValidatorStatus
    - GET /devnet/environment -> dict[str, str]
    - POST /devnet/stop -> dict

内部方法：
    无
"""

from __future__ import annotations

from fastapi import APIRouter

from ..config import get_config
from .schemas import ValidatorStatus
from . import services
from .services.environment import read_descriptor


router = APIRouter(prefix="/devnet", tags=["Devnet"])


@router.get("/status", response_model=ValidatorStatus)
async def get_status() -> ValidatorStatus:
    """获取节点状态。"""
    return services.status(get_config())


@router.get("/environment", response_model=dict[str, str])
async def get_environment() -> dict[str, str]:
    """读取最近一次写出的环境描述，未生成时返回空对象。"""
    return read_descriptor(get_config().descriptor_file)


@router.post("/stop")
async def post_stop() -> dict:
    """停止 PID 记录中的节点。"""
    pid = services.stop_devnet(get_config())
    return {"stopped": pid is not None, "pid": pid}
