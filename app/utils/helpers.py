"""
@description 通用工具函数
@responsibility 逻辑路径解析与规范化、缓存键计算、下载文件名生成
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Optional

from app.core.errors import MalformedInputError

PATH_SEPARATOR = "/"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9 _.-]")


def parse_path(path: str) -> list[str]:
    """
    将 URL 路径拆分为逻辑路径组件

    Examples:
        >>> parse_path("/dsn/public/Folder/Report/")
        ['dsn', 'public', 'Folder', 'Report']
    """
    return path.strip(PATH_SEPARATOR).split(PATH_SEPARATOR)


def path_to_string(path: list[str]) -> str:
    """
    逻辑路径的规范字符串形式，组件中不允许出现斜杠

    Raises:
        MalformedInputError: 某个组件包含斜杠
    """
    if any(PATH_SEPARATOR in component for component in path):
        raise MalformedInputError("路径组件中不能包含斜杠")
    return PATH_SEPARATOR.join(path)


def cache_key(path: list[str], prompt_answers: Optional[dict[str, str]] = None) -> str:
    """
    计算 (路径, 提示参数) 的缓存键

    使用 SHA-256 摘要规范化 JSON，结果为 64 位大写 hex，
    未提供提示参数与空提示参数等价。
    """
    identifier = {"path": list(path), "promptAnswers": prompt_answers or {}}
    canonical = json.dumps(
        identifier, sort_keys=True, ensure_ascii=False, separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest().upper()


def safe_filename(path: list[str], extension: str = "csv") -> str:
    """
    根据路径最后一个组件生成下载文件名，只保留无需在 HTTP 头中转义的字符

    Examples:
        >>> safe_filename(["dsn", "public", 'Enrollment "Fall"/2024'])
        'Enrollment Fall2024.csv'
    """
    name = _UNSAFE_FILENAME_CHARS.sub("", path[-1]) if path else ""
    return f"{name}.{extension}"
