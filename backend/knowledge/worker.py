"""
后台任务调度 (JobRunner)

每个注册的队列由 concurrency 个常驻 worker 协程消费，全部由 JobRunner 持有并管理生命周期:
  start()  启动所有 worker
  drain()  停止拉取新任务，等待进行中的任务完成
  close()  drain 后取消 worker 并关闭 broker

失败处理:
  - 处理器抛错且未用尽尝试次数 → 按 RetryPolicy 延迟重新投递
  - 用尽尝试次数，或 NotFound / ConfigurationError 这类重试无意义的错误
    → 原 payload 与来源队列一并转入 "{queue}:dlq"，记录队列名与任务 id
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from .errors import ConfigurationError, NotFound
from .queues import Delivery, JobBroker, JobEnvelope, RetryPolicy, dead_letter_name

logger = logging.getLogger("knowledge.worker")

JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]

NON_RETRYABLE = (NotFound, ConfigurationError)


@dataclass
class _QueueSpec:
    queue: str
    handler: JobHandler
    policy: RetryPolicy
    concurrency: int


class JobRunner:

    def __init__(self, broker: JobBroker, *, poll_interval: float = 0.5) -> None:
        self._broker = broker
        self._poll_interval = poll_interval
        self._specs: dict[str, _QueueSpec] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None
        self._inflight = 0

    @property
    def queues(self) -> list[str]:
        return list(self._specs)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def register(
        self,
        queue: str,
        handler: JobHandler,
        policy: RetryPolicy,
        concurrency: int = 1,
    ) -> None:
        if self._tasks:
            raise RuntimeError("JobRunner 已启动，不能再注册队列")
        self._specs[queue] = _QueueSpec(queue, handler, policy, max(1, concurrency))

    async def enqueue(
        self,
        queue: str,
        payload: Union[dict[str, Any], BaseModel],
        name: Optional[str] = None,
    ) -> JobEnvelope:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        envelope = JobEnvelope(queue=queue, name=name or queue, payload=payload)
        await self._broker.publish(queue, envelope)
        logger.info(f"[Queue] 任务入队: queue={queue}, job={envelope.id}")
        return envelope

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = asyncio.Event()
        for spec in self._specs.values():
            for i in range(spec.concurrency):
                task = asyncio.create_task(self._worker_loop(spec), name=f"{spec.queue}-worker-{i}")
                self._tasks.append(task)
        logger.info(f"[Queue] worker 已启动: {', '.join(f'{s.queue}x{s.concurrency}' for s in self._specs.values())}")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """等待所有已注册队列没有积压 (含延迟重试) 且没有进行中的任务；超时返回 False"""
        async def _poll() -> None:
            while True:
                if self._inflight == 0:
                    counts = [await self._broker.pending(q) for q in self._specs]
                    if not any(counts) and self._inflight == 0:
                        return
                await asyncio.sleep(min(self._poll_interval, 0.05))

        try:
            await asyncio.wait_for(_poll(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def drain(self, timeout: Optional[float] = None) -> None:
        if self._stopping is None:
            return
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.warning(f"[Queue] drain 超时，仍有 {len(pending)} 个 worker 未退出")

    async def close(self, timeout: Optional[float] = None) -> None:
        await self.drain(timeout)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._broker.close()
        logger.info("[Queue] worker 已关闭")

    # ------------------------------------------------------------------
    # 消费
    # ------------------------------------------------------------------
    async def _worker_loop(self, spec: _QueueSpec) -> None:
        stopping = self._stopping
        while not stopping.is_set():
            try:
                delivery = await self._broker.fetch(spec.queue)
            except Exception as e:
                logger.warning(f"[Queue] 拉取任务失败: queue={spec.queue}, err={e}")
                delivery = None
            if delivery is None:
                try:
                    await asyncio.wait_for(stopping.wait(), self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            self._inflight += 1
            try:
                await self._process(spec, delivery)
            finally:
                self._inflight -= 1

    async def _process(self, spec: _QueueSpec, delivery: Delivery) -> None:
        envelope = delivery.envelope
        attempt = envelope.attempts_made + 1
        try:
            await spec.handler(envelope.payload)
        except Exception as e:
            try:
                await self._handle_failure(spec, envelope, attempt, e)
                await delivery.ack()
            except Exception as publish_error:
                logger.error(
                    f"[Queue] 失败任务转投失败，交还队列: queue={spec.queue}, job={envelope.id}, err={publish_error}"
                )
                await delivery.reject(requeue=True)
            return
        await delivery.ack()
        logger.info(f"[Queue] 任务完成: queue={spec.queue}, job={envelope.id}, attempt={attempt}")

    async def _handle_failure(
        self,
        spec: _QueueSpec,
        envelope: JobEnvelope,
        attempt: int,
        error: Exception,
    ) -> None:
        retryable = not isinstance(error, NON_RETRYABLE)
        if retryable and attempt < spec.policy.attempts:
            delay = spec.policy.delay_for(attempt)
            await self._broker.publish(
                spec.queue,
                envelope.model_copy(update={"attempts_made": attempt, "error": str(error)}),
                delay,
            )
            logger.warning(
                f"[Queue] 任务失败，{delay:.1f}s 后重试: queue={spec.queue}, job={envelope.id}, "
                f"attempt={attempt}/{spec.policy.attempts}, err={error}"
            )
            return

        dlq = dead_letter_name(spec.queue)
        await self._broker.publish(dlq, envelope.model_copy(update={
            "queue": dlq,
            "origin": spec.queue,
            "attempts_made": attempt,
            "error": f"{type(error).__name__}: {error}",
        }))
        logger.error(
            f"[Queue] 任务转入死信队列: queue={spec.queue}, job={envelope.id}, "
            f"attempts={attempt}, err={error}, context={getattr(error, 'context', {})}"
        )
