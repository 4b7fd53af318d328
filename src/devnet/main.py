"""
FastAPI 应用入口点：只读的本地开发链状态接口，供下游工具查询。
"""

from loguru import logger
from contextlib import asynccontextmanager

from fastapi import FastAPI
from src.devnet.orchestrator.router import router as devnet_router

from src.devnet.config import get_config


@asynccontextmanager
async def lifespan(app: FastAPI):
    from src.devnet.orchestrator.services import status

    s = status(get_config())
    logger.info(f"验证节点状态: {s.model_dump_json(indent=4)}")
    yield
    logger.info("状态接口已关闭，节点保持运行（使用 devnet stop 停止）")


app = FastAPI(title="Local Devnet Orchestrator", lifespan=lifespan)

app.include_router(devnet_router, prefix="/v1")

logger.info(f"config: {get_config().model_dump_json(indent=4)}")
