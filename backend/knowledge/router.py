"""
知识库 FastAPI 路由（挂载于 /api/knowledge）

上传: 创建会话 → PUT 分片 (请求体为原始字节) → complete 后自动投递入库任务
检索: POST /knowledge/search
删除: DELETE /knowledge/documents/{id}，异步执行
"""
from __future__ import annotations

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from .errors import NotFound, PolicyViolation, TransientStorageError, UploadStateError
from .models import DeletionJob, HybridSearchResult, SearchRequest, UploadContext
from .policy import UploadRequest
from .service import KnowledgeService

logger = logging.getLogger("knowledge.router")

router = APIRouter(prefix="/knowledge", tags=["knowledge"])

_POLICY_STATUS = {
    PolicyViolation.SIZE_EXCEEDED: 413,
    PolicyViolation.MIME_NOT_ALLOWED: 415,
    PolicyViolation.RATE_LIMITED: 429,
    PolicyViolation.SCAN_FAILED: 422,
}


class StartUploadBody(BaseModel):
    workspace: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    mime_type: Optional[str] = None
    uploader_id: Optional[str] = None
    part_size: Optional[int] = Field(None, ge=1)
    checksum: Optional[str] = None


class CompleteUploadBody(BaseModel):
    filename: str = Field(..., min_length=1)
    uploader_id: Optional[str] = None


def _service(request: Request) -> KnowledgeService:
    service = getattr(request.app.state, "knowledge_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="知识库服务未初始化")
    return service


def _raise_http(e: Exception) -> NoReturn:
    if isinstance(e, PolicyViolation):
        raise HTTPException(status_code=_POLICY_STATUS.get(e.reason, 400), detail={"reason": e.reason, "detail": e.detail})
    if isinstance(e, NotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UploadStateError):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TransientStorageError):
        raise HTTPException(status_code=502, detail=f"对象存储暂不可用: {e}")
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    raise e


# ---------------------------------------------------------------------------
# 上传
# ---------------------------------------------------------------------------

@router.post("/uploads", summary="创建断点续传会话")
async def start_upload(body: StartUploadBody, request: Request):
    """先做策略检查 (大小 / 类型 / 限流)，通过后创建分片上传会话"""
    service = _service(request)
    try:
        session = await service.start_upload(
            UploadRequest(
                workspace=body.workspace,
                filename=body.filename,
                size=body.size,
                mime_type=body.mime_type,
                uploader_id=body.uploader_id,
                mode="resumable",
            ),
            part_size=body.part_size,
            checksum=body.checksum,
        )
    except Exception as e:
        _raise_http(e)
    return session.model_dump(mode="json", exclude={"upload_id"})


@router.put("/uploads/{session_id}/parts/{part_number}", summary="上传分片")
async def upload_part(
    session_id: str,
    part_number: int,
    request: Request,
    x_uploader_id: Optional[str] = Header(None),
):
    """请求体为分片原始字节；同一 part_number 重传会覆盖旧分片"""
    service = _service(request)
    data = await request.body()
    try:
        part = await service.upload_part(session_id, part_number, data, x_uploader_id)
    except Exception as e:
        _raise_http(e)
    return part.model_dump()


@router.post("/uploads/{session_id}/complete", summary="完成上传并投递入库任务")
async def complete_upload(session_id: str, body: CompleteUploadBody, request: Request):
    service = _service(request)
    try:
        session = await service.uploads.get(session_id)
        context = UploadContext(
            workspace_slug=session.workspace,
            filename=body.filename,
            size=session.size,
            mime_type=session.mime_type,
            uploader_id=body.uploader_id,
        )
        result, envelope = await service.complete_upload(session_id, context)
    except Exception as e:
        _raise_http(e)
    return {"upload": result.model_dump(), "job_id": envelope.id}


@router.delete("/uploads/{session_id}", summary="取消上传")
async def abort_upload(session_id: str, request: Request):
    service = _service(request)
    try:
        await service.abort_upload(session_id)
    except Exception as e:
        _raise_http(e)
    return {"aborted": True}


# ---------------------------------------------------------------------------
# 检索 / 删除
# ---------------------------------------------------------------------------

@router.post("/search", response_model=list[HybridSearchResult], summary="混合检索")
async def search(body: SearchRequest, request: Request):
    """向量 + 关键词两路召回，不传 embedding 时由服务端计算查询向量"""
    service = _service(request)
    try:
        return await service.search(
            body.query,
            body.filters,
            embedding=body.embedding,
            vector_k=body.vector_k,
            keyword_k=body.keyword_k,
            limit=body.limit,
        )
    except Exception as e:
        _raise_http(e)


@router.delete("/documents/{document_id}", status_code=202, summary="删除文档 (异步)")
async def delete_document(
    document_id: str,
    request: Request,
    workspace: str,
    delete_file: bool = False,
    reason: Optional[str] = None,
):
    service = _service(request)
    envelope = await service.request_deletion(
        DeletionJob(workspace_slug=workspace, document_id=document_id, delete_file=delete_file, reason=reason),
    )
    logger.info(f"[KB] 删除任务已入队: doc={document_id}, job={envelope.id}")
    return {"job_id": envelope.id}
