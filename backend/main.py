"""
租户知识库后端
基于 FastAPI 的文档上传、入库与混合检索服务
"""
import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 必须先加载 .env，再读取配置
load_dotenv()

from config import load_settings
from infra.postgres import service as postgres_service
from infra.rabbitmq import service as rabbitmq_service
from infra.redis import service as redis_service
from knowledge import router as knowledge_router
from knowledge.service import build_service

# 配置知识库日志，确保 [KB] / [Upload] / [Queue] 输出到终端
_kb_log = logging.getLogger("knowledge")
_kb_log.setLevel(logging.INFO)
if not _kb_log.handlers:
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    _kb_log.addHandler(_h)

logger = logging.getLogger("knowledge.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：API 进程只负责投递任务，消费由 scripts/knowledge_worker.py 完成"""
    settings = load_settings()
    app.state.settings = settings
    app.state.knowledge_service = build_service(settings)
    logger.info("[KB] 知识库服务启动")
    yield
    await app.state.knowledge_service.runner.close()
    logger.info("[KB] 知识库服务已关闭")


app = FastAPI(
    title="Knowledge Base API",
    description="""
租户知识库后端 API。

## 实现流程概览

1. **上传**：`POST /api/knowledge/uploads` 策略检查 (大小 / 类型 / 限流) 后创建分片会话 →
   `PUT /api/knowledge/uploads/{id}/parts/{n}` 上传分片 → `POST .../complete` 合并并投递入库任务。
2. **入库**：worker 消费 ingestion 队列，解析 → 切块 → PostgreSQL 事务写入 → 逐块向量化 (带缓存)。
3. **检索**：`POST /api/knowledge/search` 向量 + 全文两路召回，关键词加权后统一排名与归一化。
4. **删除**：`DELETE /api/knowledge/documents/{id}` 投递 deletion 任务，失败任务进入死信队列。
    """,
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/ping", tags=["debug"])
async def ping_root():
    return {"pong": True, "message": "backend ok"}


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(knowledge_router, prefix="/api")


@app.get("/health", tags=["health"])
async def health_check():
    """健康检查：逐个探测依赖服务"""
    settings = app.state.settings
    checks = {
        "postgres": lambda: postgres_service.ping(settings.postgres.dsn),
        "redis": lambda: redis_service.ping(settings.redis.url),
        "rabbitmq": lambda: rabbitmq_service.ping(settings.rabbitmq.url),
    }
    result = {}
    for name, check in checks.items():
        try:
            result[name] = "ok" if await check() else "error"
        except Exception as e:
            result[name] = f"error: {e}"
    status = "healthy" if all(v == "ok" for v in result.values()) else "degraded"
    return {"status": status, "services": result}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
