import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from optimizer.api.optimization import close_service
from optimizer.api.optimization import router as optimization_router
from optimizer.config import settings
from optimizer.logger import setup_logging

logger = logging.getLogger(__name__)

# 优雅关闭超时时间（秒）
_shutdown_timeout = 30


async def _graceful_shutdown() -> None:
    """优雅关闭逻辑：取消运行中的搜索并等待其结束，超时后强制关闭。"""
    logger.info("[关闭] 停止接受新任务，取消运行中的优化任务...")
    logger.info("[关闭] 超时时间：%d 秒", _shutdown_timeout)

    try:
        await asyncio.wait_for(close_service(_shutdown_timeout), timeout=_shutdown_timeout + 5)
    except asyncio.TimeoutError:
        logger.warning("[关闭] 等待超时（%d 秒），强制退出", _shutdown_timeout)

    logger.info("[关闭] 完成")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    logger.info("%s 启动，评分服务：%s%s", settings.app_name, settings.scoring_base_url, settings.scoring_endpoint)

    yield

    await _graceful_shutdown()


app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
)

# CORS 配置（允许前端开发服务器跨域访问）
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(optimization_router)


@app.get("/health")
async def health_check() -> dict:
    return {"status": "ok"}
