"""
租户知识库：上传 → 解析 → 切块 → 向量化 → 混合检索

模块职责:
- policy: 上传策略守卫 (大小 / MIME / 限流 / 内容扫描)，全部决策写审计日志
- uploads / upload_sessions: 断点续传分片上传与会话存储
- parsers / chunking: 多格式解析与定长滑窗切块
- embedding / embedding_cache: 向量化与内容寻址缓存
- document_repository / chunk_repository: PostgreSQL (pgvector + 全文检索) 存储
- ingestion: 入库编排；search: 混合检索
- queues / worker / tasks: 带重试与死信队列的后台任务
- service / router: 服务门面与 FastAPI HTTP 接口
"""
from .router import router

__all__ = ["router"]
