"""
@description 报表访问控制
@responsibility 校验调用方密码（报表密码或主密码），主密码首次访问报表时生成并保存报表密码；
                校验耗时不低于固定下限，防止计时攻击
"""

import asyncio
import secrets
import string
import time
from typing import TYPE_CHECKING

from loguru import logger

from app.utils.helpers import path_to_string

if TYPE_CHECKING:
    from app.core.context import GatewayContext

MIN_CHECK_SECONDS = 0.1
REPORT_PASSWORD_LENGTH = 64

_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = REPORT_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def _matches(provided: str, expected: str) -> bool:
    # 空密码永远不匹配（包括未填写的主密码）
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class AccessController:
    """两级密码（主密码 / 报表密码）访问控制"""

    def __init__(self, context: "GatewayContext", min_check_seconds: float = MIN_CHECK_SECONDS):
        self._context = context
        self._min_check_seconds = min_check_seconds

    async def allowed_access(self, provided_password: str, path: list[str]) -> bool:
        """
        校验密码是否可以访问给定路径

        - 与报表密码一致：允许
        - 与主密码一致：允许；该报表还没有密码时生成一个并写回配置文件
        - 其他：拒绝

        无论走哪个分支，总耗时不低于 min_check_seconds；等待期间不持有锁。
        """
        started = time.monotonic()
        try:
            async with self._context.lock:
                return self._check(provided_password, path)
        finally:
            remaining = self._min_check_seconds - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    def _check(self, provided_password: str, path: list[str]) -> bool:
        config = self._context.config
        path_string = path_to_string(path)

        report_password = config.report_passwords.get(path_string)
        if report_password is not None and _matches(provided_password, report_password):
            return True

        if _matches(provided_password, config.master_password):
            if report_password is None:
                self._create_report_password(path_string)
            return True

        return False

    def _create_report_password(self, path_string: str) -> None:
        """生成报表密码并同步写回配置文件（调用方持有锁）"""
        config = self._context.config
        if path_string in config.report_passwords:
            raise RuntimeError(f"报表密码已存在: {path_string}")

        config.report_passwords[path_string] = generate_password()
        try:
            self._context.save_config()
        except Exception:
            # 保存失败时撤销
            del config.report_passwords[path_string]
            raise
        logger.info(f"已为报表生成专属密码: {path_string}")
