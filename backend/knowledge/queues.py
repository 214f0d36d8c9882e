"""
后台任务队列原语

- RetryPolicy: 最大尝试次数 + 退避方式 (exponential / fixed)
- JobEnvelope: 队列中流转的任务信封，payload 原样保留直到进入死信队列
- JobBroker: 投递 / 拉取 / 积压查询；生产实现见 infra.rabbitmq.service.RabbitJobBroker
- InMemoryJobBroker: 进程内实现，延迟投递用 loop.call_later 模拟

队列名:
  ingestion / deletion          工作队列
  ingestion:dlq / deletion:dlq  死信队列 (耗尽重试或不可重试的任务)
"""
from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from .models import utcnow

INGESTION_QUEUE = "ingestion"
DELETION_QUEUE = "deletion"


def dead_letter_name(queue: str) -> str:
    return f"{queue}:dlq"


class RetryPolicy(BaseModel):
    attempts: int = Field(..., ge=1)
    backoff: Literal["exponential", "fixed"] = "exponential"
    delay_seconds: float = Field(..., ge=0)

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后到下一次执行的等待时间 (attempt 从 1 开始)"""
        if self.backoff == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (2 ** (attempt - 1))


INGESTION_POLICY = RetryPolicy(attempts=3, backoff="exponential", delay_seconds=5.0)
DELETION_POLICY = RetryPolicy(attempts=2, backoff="fixed", delay_seconds=2.0)


class JobEnvelope(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue: str
    name: str
    payload: dict[str, Any]
    attempts_made: int = 0
    origin: Optional[str] = None
    error: Optional[str] = None
    enqueued_at: str = Field(default_factory=lambda: utcnow().isoformat())


@dataclass
class Delivery:
    """一次拉取到的任务；处理完必须 ack，处理器之外的异常时 reject 交还队列"""
    envelope: JobEnvelope
    _ack: Callable[[], Awaitable[None]]
    _reject: Callable[[bool], Awaitable[None]]

    async def ack(self) -> None:
        await self._ack()

    async def reject(self, requeue: bool = True) -> None:
        await self._reject(requeue)


class JobBroker(Protocol):

    async def publish(self, queue: str, envelope: JobEnvelope, delay_seconds: float = 0) -> None: ...

    async def fetch(self, queue: str) -> Optional[Delivery]: ...

    async def pending(self, queue: str) -> int: ...

    async def close(self) -> None: ...


class InMemoryJobBroker:

    def __init__(self) -> None:
        self._queues: dict[str, deque[JobEnvelope]] = {}
        self._delayed: dict[str, int] = {}
        # (queue, delay_seconds, envelope) 全部投递记录，便于断言退避时间
        self.published: list[tuple[str, float, JobEnvelope]] = []

    def _queue(self, name: str) -> deque[JobEnvelope]:
        return self._queues.setdefault(name, deque())

    def messages(self, queue: str) -> list[JobEnvelope]:
        return list(self._queue(queue))

    async def publish(self, queue: str, envelope: JobEnvelope, delay_seconds: float = 0) -> None:
        self.published.append((queue, delay_seconds, envelope))
        if delay_seconds <= 0:
            self._queue(queue).append(envelope)
            return
        self._delayed[queue] = self._delayed.get(queue, 0) + 1

        def _release() -> None:
            self._delayed[queue] -= 1
            self._queue(queue).append(envelope)

        asyncio.get_running_loop().call_later(delay_seconds, _release)

    async def fetch(self, queue: str) -> Optional[Delivery]:
        q = self._queue(queue)
        if not q:
            return None
        envelope = q.popleft()

        async def _ack() -> None:
            return None

        async def _reject(requeue: bool) -> None:
            if requeue:
                q.appendleft(envelope)

        return Delivery(envelope, _ack, _reject)

    async def pending(self, queue: str) -> int:
        return len(self._queue(queue)) + self._delayed.get(queue, 0)

    async def close(self) -> None:
        return None
