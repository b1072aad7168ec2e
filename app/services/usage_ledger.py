"""
@description 报表使用记录
@responsibility 记录每次请求的缓存键和参数（UPSERT），查询最近使用过的报表用于缓存预热
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.database import get_session
from app.models.usage_record import UsageRecord
from app.utils.helpers import parse_path, path_to_string

# SQLite 只允许单写者，"database is locked" 时短暂等待后重试
LEDGER_MAX_ATTEMPTS = 3
LEDGER_RETRY_DELAY = 1.0


@dataclass
class UsedReport:
    """使用记录中的一条报表请求"""

    path: list[str]
    prompt_answers: dict[str, str] = field(default_factory=dict)
    last_used: int = 0


class UsageLedger:
    """使用记录存储"""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        retry_delay: float = LEDGER_RETRY_DELAY,
    ):
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def _with_retry(self, func, *args):
        """执行数据库操作，遇到锁冲突时有限次重试"""
        for attempt in range(self._max_attempts):
            try:
                return await func(*args)
            except OperationalError as e:
                if attempt == self._max_attempts - 1:
                    raise
                logger.warning(
                    f"使用记录数据库忙（第 {attempt + 1} 次），{self._retry_delay}秒后重试: {e}"
                )
                await asyncio.sleep(self._retry_delay)

    async def record_use(
        self,
        key: str,
        path: list[str],
        prompt_answers: Optional[dict[str, str]] = None,
        used_at: Optional[int] = None,
    ) -> bool:
        """
        记录一次报表使用（UPSERT，同一缓存键只保留最近一次）

        记录失败不影响请求处理，只记录日志。

        Returns:
            bool: 是否记录成功
        """
        try:
            params = {
                "hash": key,
                "path": path_to_string(path),
                "prompt_answers": json.dumps(prompt_answers or {}, ensure_ascii=False),
                "last_used": int(time.time()) if used_at is None else used_at,
            }
            await self._with_retry(self._upsert, params)
            return True
        except Exception as e:
            logger.error(f"记录报表使用失败: {path}, 错误: {e}")
            return False

    async def _upsert(self, params: dict) -> None:
        async with get_session(self._session_factory) as session:
            await session.execute(
                text("""
                INSERT INTO usage (hash, path, prompt_answers, last_used)
                VALUES (:hash, :path, :prompt_answers, :last_used)
                ON CONFLICT(hash) DO UPDATE SET
                    path = excluded.path,
                    prompt_answers = excluded.prompt_answers,
                    last_used = excluded.last_used
            """),
                params,
            )
            await session.commit()

    async def recently_used(self, used_within: int) -> list[UsedReport]:
        """查询最近 used_within 秒内使用过的报表"""
        min_timestamp = int(time.time()) - used_within
        return await self._with_retry(self._select_since, min_timestamp)

    async def _select_since(self, min_timestamp: int) -> list[UsedReport]:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                select(UsageRecord).where(UsageRecord.last_used >= min_timestamp)
            )
            rows = result.scalars().all()

        return [
            UsedReport(
                path=parse_path(row.path),
                prompt_answers=json.loads(row.prompt_answers) if row.prompt_answers else {},
                last_used=row.last_used,
            )
            for row in rows
        ]
