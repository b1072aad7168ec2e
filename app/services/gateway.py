"""
@description 报表网关编排
@responsibility 按缓存策略返回报表/文件夹内容：先查缓存，未命中时从 Cognos 获取并写入缓存，
                记录使用情况，按需转换为 JSON；根据使用记录预热缓存
"""

import asyncio
import csv
import io
import re
from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger

from app.core.errors import (
    MalformedInputError,
    NotCachedError,
    RemoteObjectNotFound,
    UnknownUserError,
)
from app.services.cognos_client import (
    CURRENT_USER_MARKER,
    CognosSession,
    Folder,
    Report,
)
from app.services.csv_converter import csv_to_json
from app.utils.helpers import cache_key, path_to_string, safe_filename

# 路径第二个组件为 "public" 时访问公共文件夹，否则为 Cognos 用户名
PUBLIC_ROOT = "public"
PUBLIC_FOLDERS = "Public Folders"

_MAX_AGE_PATTERN = re.compile(r"max-age=\s*([0-9]+)")


@dataclass
class GatewayResponse:
    """返回给前端的响应内容"""

    body: bytes
    media_type: str
    filename: Optional[str] = None


def parse_cache_control(header: Optional[str], default_max_age: int) -> tuple[int, bool]:
    """
    解析 Cache-Control 请求头

    Returns:
        tuple: (最大缓存时间秒数, 是否只使用缓存)

    Raises:
        MalformedInputError: 无法识别的指令或非法的 max-age
    """
    directive = (header or "").strip().lower()
    if not directive:
        return default_max_age, False
    if directive == "no-cache":
        return 0, False
    if directive == "only-if-cached":
        return 0, True
    if match := _MAX_AGE_PATTERN.fullmatch(directive):
        return int(match.group(1)), False
    raise MalformedInputError(f"无法识别的 Cache-Control: {header}")


def folder_to_csv(folder: Folder) -> str:
    """将文件夹内容渲染为 name,type 两列的 CSV"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["name", "type"])
    for name in sorted(folder.children):
        child = folder.children[name]
        writer.writerow([name, "folder" if isinstance(child, Folder) else "report"])
    return buffer.getvalue()


class ReportGateway:
    """报表网关"""

    def __init__(self, context, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._context = context
        self._transport = transport

    def _backend_path(self, path: list[str]) -> tuple[str, str, list[str]]:
        """
        将逻辑路径映射为 (Cognos 用户, 密码, 后端路径)

        逻辑路径形如 dsn/public/... 或 dsn/DOMAIN_user/...，
        用户名中的第一个 "_" 代表 "\\"（URL 中不便使用反斜杠）。
        """
        users = self._context.config.cognos.user_passwords
        root, rest = path[1], path[2:]

        if root == PUBLIC_ROOT:
            # 公共文件夹使用任意一个已配置的账号
            user, password = next(iter(users.items()))
            return user, password, [PUBLIC_FOLDERS, *rest]

        user = root.replace("_", "\\", 1)
        if user not in users:
            raise UnknownUserError(f"配置文件中没有用户 {user} 的密码")
        return user, users[user], [CURRENT_USER_MARKER, *rest]

    async def open_session(self, dsn: str, user: str, password: str) -> CognosSession:
        """为单个请求创建 Cognos 会话"""
        cognos = self._context.config.cognos
        return await CognosSession.create(
            user,
            password,
            cognos.url,
            cognos.namespace,
            dsn,
            retry_delay=cognos.retry_delay,
            retry_count=cognos.retry_count,
            http_timeout=cognos.http_timeout,
            concurrent_requests=cognos.concurrent_requests,
            transport=self._transport,
        )

    async def _fetch_remote(
        self, path: list[str], prompt_answers: Optional[dict[str, str]]
    ) -> bytes:
        user, password, remote_path = self._backend_path(path)
        logger.info(f"从 Cognos 获取: {path_to_string(path)}（用户 {user}）")

        session = await self.open_session(path[0], user, password)
        async with session:
            remote_object = await session.resolve(remote_path)
            if isinstance(remote_object, Folder):
                content = folder_to_csv(remote_object)
            elif isinstance(remote_object, Report):
                content = await session.download_report_csv(
                    remote_object.path, prompt_answers
                )
            else:
                raise RemoteObjectNotFound(f"未知的 Cognos 对象类型: {remote_object!r}")

        return content.encode("utf-8")

    async def fetch(
        self,
        path: list[str],
        prompt_answers: Optional[dict[str, str]] = None,
        max_age: int = 0,
        only_if_cached: bool = False,
    ) -> bytes:
        """
        获取路径对应的原始内容（报表 CSV 或文件夹列表 CSV）

        - max_age 为 0：总是从 Cognos 重新获取
        - max_age > 0：缓存年龄不超过 max_age 时使用缓存
        - only_if_cached：只使用缓存（不论年龄），未命中时抛出 NotCachedError

        Cognos 请求失败时不写缓存；缓存写入失败会抛出 StorageError。
        """
        if len(path) < 2:
            raise MalformedInputError("路径至少需要包含 DSN 和另一个组件")
        path_to_string(path)

        key = cache_key(path, prompt_answers)
        data, age = await asyncio.to_thread(self._context.cache.get, key)
        if age >= 0 and (only_if_cached or (0 < max_age and age <= max_age)):
            logger.debug(f"缓存命中: {key}（{age}秒）")
            return data

        if only_if_cached:
            raise NotCachedError(f"缓存中没有: {path_to_string(path)}")

        data = await self._fetch_remote(path, prompt_answers)
        await asyncio.to_thread(self._context.cache.put, key, data)
        return data

    async def serve(
        self,
        path: list[str],
        as_json: bool = False,
        prompt_answers: Optional[dict[str, str]] = None,
        max_age: int = 0,
        only_if_cached: bool = False,
    ) -> GatewayResponse:
        """处理一次报表请求：获取内容、记录使用、按格式输出"""
        data = await self.fetch(path, prompt_answers, max_age, only_if_cached)

        # 使用记录失败只记日志
        await self._context.ledger.record_use(
            cache_key(path, prompt_answers), path, prompt_answers
        )

        if as_json:
            body = csv_to_json(data.decode("utf-8", errors="replace"))
            return GatewayResponse(body.encode("utf-8"), "application/json")
        return GatewayResponse(data, "text/csv", safe_filename(path))

    async def warm(self, used_within: int) -> tuple[int, int]:
        """
        预热缓存：强制刷新最近 used_within 秒内使用过的每个报表

        单个报表失败只记日志，不中断预热。

        Returns:
            tuple: (刷新成功数, 失败数)
        """
        reports = await self._context.ledger.recently_used(used_within)
        logger.info(f"开始预热缓存: {len(reports)} 个报表")

        refreshed = failed = 0
        for report in reports:
            path_str = "/".join(report.path)
            try:
                await self.fetch(report.path, report.prompt_answers, max_age=0)
                refreshed += 1
                logger.info(f"预热完成: {path_str}")
            except Exception as e:
                failed += 1
                logger.error(f"预热失败: {path_str}, 错误: {e}")

        logger.info(f"缓存预热结束: 成功 {refreshed}, 失败 {failed}")
        return refreshed, failed
