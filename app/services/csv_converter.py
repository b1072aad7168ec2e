"""
@description CSV 转 JSON 转换器
@responsibility 按列推断标量类型（bool → int64 → float64 → str），将带表头的 CSV 转为 JSON 对象数组
"""

import csv
import io
import json
import math
import re
from enum import IntEnum
from typing import Any, Callable

from app.core.errors import MalformedInputError

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_FLOAT_PATTERN = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
_WORD_PATTERN = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|[0-9]+")


class ColumnType(IntEnum):
    """列类型，按推断顺序排列"""

    BOOL = 0
    INT = 1
    FLOAT = 2
    STRING = 3


def parse_bool(value: str) -> bool:
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"不是布尔值: {value!r}")


def parse_int(value: str) -> int:
    if not _INT_PATTERN.fullmatch(value):
        raise ValueError(f"不是整数: {value!r}")
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"超出 64 位整数范围: {value!r}")
    return number


def parse_float(value: str) -> float:
    # inf / nan 无法表示为 JSON，按字符串处理
    if not _FLOAT_PATTERN.fullmatch(value):
        raise ValueError(f"不是浮点数: {value!r}")
    number = float(value)
    if math.isinf(number):
        raise ValueError(f"超出 64 位浮点数范围: {value!r}")
    return number


_PARSERS: dict[ColumnType, Callable[[str], Any]] = {
    ColumnType.BOOL: parse_bool,
    ColumnType.INT: parse_int,
    ColumnType.FLOAT: parse_float,
    ColumnType.STRING: str,
}


def _parses_as(values: list[str], parser: Callable[[str], Any]) -> bool:
    try:
        for value in values:
            parser(value)
    except ValueError:
        return False
    return True


def infer_column_type(values: list[str]) -> ColumnType:
    """推断一列的类型：取所有值都能解析的第一个类型，字符串总能成功"""
    for column_type in ColumnType:
        if column_type is ColumnType.STRING:
            break
        if _parses_as(values, _PARSERS[column_type]):
            return column_type
    return ColumnType.STRING


def to_lower_camel(name: str) -> str:
    """
    将表头名称转为小驼峰

    Examples:
        >>> to_lower_camel("Student ID")
        'studentId'
        >>> to_lower_camel("FIRST_NAME")
        'firstName'
    """
    words = _WORD_PATTERN.findall(name)
    if not words:
        return ""
    return words[0].lower() + "".join(word.capitalize() for word in words[1:])


def csv_to_records(csv_data: str) -> list[dict[str, Any]]:
    """
    将 CSV 文本转换为带类型的记录列表

    - 第一行是表头，至少需要表头行
    - 表头和值都去掉尾部空格
    - 行比表头短时，缺失的单元格不参与类型推断，也不出现在该行记录中
    - 归一化后重名的表头，后出现的列覆盖先出现的列

    Raises:
        MalformedInputError: 没有任何行或 CSV 无法解析
    """
    try:
        rows = [row for row in csv.reader(io.StringIO(csv_data.lstrip("\ufeff"))) if row]
    except csv.Error as e:
        raise MalformedInputError(f"CSV 解析失败: {e}") from e

    if not rows:
        raise MalformedInputError("CSV 至少需要 1 行（表头）")

    headers = [name.rstrip(" ") for name in rows[0]]
    data_rows = [[value.rstrip(" ") for value in row] for row in rows[1:]]

    column_types = [
        infer_column_type([row[col] for row in data_rows if col < len(row)])
        for col in range(len(headers))
    ]
    keys = [to_lower_camel(name) for name in headers]

    records = []
    for row in data_rows:
        record: dict[str, Any] = {}
        for col, key in enumerate(keys):
            if col >= len(row):
                break
            record[key] = _PARSERS[column_types[col]](row[col])
        records.append(record)

    return records


def csv_to_json(csv_data: str) -> str:
    """将 CSV 文本转换为 JSON 数组字符串（制表符缩进）"""
    return json.dumps(csv_to_records(csv_data), indent="\t", ensure_ascii=False)
