"""
@description 进程级网关上下文
@responsibility 持有配置、配置文件路径、凭据互斥锁、响应缓存和使用记录，显式传给各组件
"""

import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Config, get_config_path, load_config, save_config
from app.core.database import create_engine, create_session_factory, init_db
from app.services.response_cache import ResponseCache
from app.services.usage_ledger import UsageLedger


class GatewayContext:
    """网关上下文：各组件共享的进程级状态"""

    def __init__(
        self,
        config: Config,
        config_path: Path,
        cache: ResponseCache,
        ledger: UsageLedger,
        engine: Optional[AsyncEngine] = None,
    ):
        self.config = config
        self.config_path = config_path
        self.cache = cache
        self.ledger = ledger
        self._engine = engine
        # 保护 report_passwords 及其持久化，持有期间不做网络请求
        self.lock = asyncio.Lock()

    @classmethod
    async def load(cls, config_path: Optional[Path] = None) -> "GatewayContext":
        """加载配置（不存在时生成占位配置并退出），初始化缓存目录和使用记录数据库"""
        config_path = config_path or get_config_path()
        config = load_config(config_path)
        logger.info(f"配置加载完成: {config_path}")

        cache = ResponseCache(config.cache.directory)

        engine = create_engine(config.cache.ledger_url)
        await init_db(engine)
        logger.info("使用记录数据库初始化完成")

        ledger = UsageLedger(create_session_factory(engine))
        return cls(config, config_path, cache, ledger, engine)

    def save_config(self) -> None:
        """回写配置文件，调用方需持有 lock"""
        save_config(self.config, self.config_path)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
