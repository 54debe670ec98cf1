# docvault/main.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docvault.api import api_router
from docvault.api.errors import register_exception_handlers
from docvault.bootstrap import build_services, run_startup_checks
from docvault.core.config import settings
from docvault.core.logging_setup import setup_logging
from docvault.db.session import async_session_maker, create_db_and_tables
from docvault.services.retrieval.es_client import close_es_client

setup_logging(str(settings.LOG_FILE_PATH), log_level=settings.LOG_LEVEL)
logger = logging.getLogger("docvault.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 {settings.PROJECT_NAME} 启动中...")

    services = None
    try:
        await create_db_and_tables()
        logger.info("✅ 数据库初始化完成。")

        services = build_services(settings, async_session_maker)
        await run_startup_checks(services)
    except Exception as e:
        logger.critical(f"❌ 服务启动自检失败: {e}", exc_info=True)
        if services is not None:
            await services.close()
        close_es_client()
        raise

    app.state.services = services
    logger.info("✅ API 服务已就绪 (DB & 向量库 & 文件存储 & Redis)。")
    yield

    logger.info(f"🛑 {settings.PROJECT_NAME} 正在关闭...")
    # 等待进行中的摄取任务结束后再释放连接
    await services.close()
    close_es_client()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)
app.include_router(api_router)


@app.get("/", tags=["General"])
def read_root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}


if __name__ == "__main__":
    import uvicorn
    logger.info("🔧 开发模式启动 (Direct Run)...")

    uvicorn.run(
        "docvault.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level="info"
    )
