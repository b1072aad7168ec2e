"""
@description 过期缓存清理后台任务
@responsibility 按配置的间隔周期性删除超过最大缓存时间的缓存条目
"""

import asyncio
from typing import Optional

from loguru import logger


class CacheSweeper:
    """后台缓存清理任务管理器"""

    def __init__(self, cache, config):
        self._cache = cache
        self._config = config
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """启动清理任务"""
        if self.running:
            logger.warning("缓存清理任务已在运行中")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("缓存清理任务已启动")

    async def stop(self) -> None:
        """停止清理任务"""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("等待缓存清理任务停止超时，强制取消")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("缓存清理任务已停止")

    async def sweep_once(self) -> int:
        """执行一次清理"""
        max_age = self._config.cache.max_age
        return await asyncio.to_thread(self._cache.sweep, max_age)

    async def _sweep_loop(self) -> None:
        """清理主循环"""
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"清理缓存时发生错误: {e}")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.cache.sweep_interval
                )
            except asyncio.TimeoutError:
                pass
