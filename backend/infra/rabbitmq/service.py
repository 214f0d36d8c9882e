"""
RabbitMQ 服务封装（aio-pika）

RabbitJobBroker 为 JobRunner 提供持久化队列:
  - 工作队列 / 死信队列均为 durable，消息 PERSISTENT
  - 延迟重试: 投递到 "{queue}.delay.{ms}" 队列 (x-message-ttl)，过期后经默认交换机
    dead-letter 回工作队列
  - 拉取: queue.get(no_ack=False, fail=False)，处理完成后由 JobRunner ack
"""
import logging
from typing import Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractQueue, AbstractRobustConnection

from config import load_settings
from knowledge.queues import Delivery, JobEnvelope

logger = logging.getLogger("knowledge.rabbitmq")


def _get_url() -> str:
    return load_settings().rabbitmq.url


async def ping(url: Optional[str] = None) -> bool:
    """
    简单健康检查：能否建立连接并打开 channel。
    """
    connection = await aio_pika.connect_robust(url or _get_url())
    try:
        await connection.channel()
        return True
    finally:
        await connection.close()


class RabbitJobBroker:

    def __init__(self, url: Optional[str] = None, prefix: str = "kb") -> None:
        self._url = url or _get_url()
        self._prefix = prefix
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queues: dict[str, AbstractQueue] = {}

    def queue_name(self, queue: str) -> str:
        return f"{self._prefix}.{queue}"

    async def _get_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            if self._connection is None or self._connection.is_closed:
                self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            self._queues.clear()
        return self._channel

    async def _declare(self, queue: str) -> AbstractQueue:
        name = self.queue_name(queue)
        channel = await self._get_channel()
        declared = self._queues.get(name)
        if declared is None:
            declared = await channel.declare_queue(name, durable=True)
            self._queues[name] = declared
        return declared

    async def publish(self, queue: str, envelope: JobEnvelope, delay_seconds: float = 0) -> None:
        channel = await self._get_channel()
        target = await self._declare(queue)
        routing_key = target.name
        if delay_seconds > 0:
            delay_ms = int(delay_seconds * 1000)
            delay_queue = await channel.declare_queue(
                f"{target.name}.delay.{delay_ms}",
                durable=True,
                arguments={
                    "x-message-ttl": delay_ms,
                    "x-dead-letter-exchange": "",
                    "x-dead-letter-routing-key": target.name,
                },
            )
            routing_key = delay_queue.name
        await channel.default_exchange.publish(
            aio_pika.Message(
                body=envelope.model_dump_json().encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=envelope.id,
            ),
            routing_key=routing_key,
        )

    async def fetch(self, queue: str) -> Optional[Delivery]:
        declared = await self._declare(queue)
        message = await declared.get(no_ack=False, fail=False)
        if message is None:
            return None
        try:
            envelope = JobEnvelope.model_validate_json(message.body)
        except ValueError as e:
            # 无法解析的消息直接丢弃，避免反复投递
            logger.error(f"[Queue] 丢弃无法解析的消息: queue={queue}, err={e}")
            await message.reject(requeue=False)
            return None

        async def _ack() -> None:
            await message.ack()

        async def _reject(requeue: bool) -> None:
            await message.reject(requeue=requeue)

        return Delivery(envelope, _ack, _reject)

    async def pending(self, queue: str) -> int:
        """工作队列积压数 (不含仍在延迟队列中的重试)"""
        channel = await self._get_channel()
        declared = await channel.declare_queue(self.queue_name(queue), passive=True)
        return declared.declaration_result.message_count or 0

    async def close(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._queues.clear()
