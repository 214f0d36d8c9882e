#!/usr/bin/env python
"""
知识库后台任务 Worker

用法:
  cd backend && python -m scripts.knowledge_worker

消费 ingestion / deletion 两个队列 (RabbitMQ)，失败任务按策略重试，耗尽后进入 *:dlq。
收到 SIGINT / SIGTERM 后停止拉取新任务，等待进行中的任务完成再退出。
"""
import asyncio
import logging
import os
import signal
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from config import load_settings
from knowledge.service import build_service

logger = logging.getLogger("knowledge.worker")


def _setup_logging() -> None:
    root = logging.getLogger("knowledge")
    root.setLevel(logging.INFO)
    if not root.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        root.addHandler(h)


async def main() -> None:
    _setup_logging()
    settings = load_settings()
    service = build_service(settings)
    runner = service.runner

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows 下无 add_signal_handler，依赖 KeyboardInterrupt
            pass

    await runner.start()
    logger.info(f"[Queue] 监听队列: {', '.join(runner.queues)} (Ctrl+C 退出)")
    try:
        await stop.wait()
    finally:
        logger.info("[Queue] 收到退出信号，等待进行中的任务完成")
        await runner.close(timeout=60)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
