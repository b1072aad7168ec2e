"""
@description Cognos 报表服务异步客户端
@responsibility 登录 Cognos、解析文件夹/报表路径、列出文件夹、列出报表提示参数、下载报表 CSV；
                所有请求受会话级并发限制并按固定间隔重试
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import quote, unquote
from xml.etree import ElementTree

import httpx
from loguru import logger

from app.core.errors import (
    RemoteAuthenticationError,
    RemoteObjectNotFound,
    RemoteUnavailableError,
)
from app.services.ntlm_auth import NegotiatingAuth

LOGIN_PATH = "/ibmcognos/bi/v1/login"
WSIL_PATH = "/ibmcognos/bi/v1/disp/rds/wsil"
OUTPUT_FORMAT_PATH = "/ibmcognos/bi/v1/disp/rds/outputFormat/path"
REPORT_PROMPTS_PATH = "/ibmcognos/bi/v1/disp/rds/reportPrompts/path"

# 路径中的 "~" 表示当前用户的 "My Folders"
CURRENT_USER_MARKER = "~"
MY_FOLDERS = "My Folders"

_WEIRD_CHARS = re.compile(r"[^a-zA-Z0-9_]")


class CognosResponseError(Exception):
    """Cognos 返回了非 200 响应"""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Cognos 返回错误: {status_code}: {body[:200]}")
        self.status_code = status_code


@dataclass(frozen=True)
class Report:
    """报表（可触发 CSV 生成）"""

    path: tuple[str, ...]
    location: str = ""


@dataclass(frozen=True)
class Folder:
    """文件夹，children 为子对象名称到对象的映射"""

    path: tuple[str, ...]
    location: str = ""
    children: dict[str, Union["Folder", Report]] = field(
        default_factory=dict, compare=False, hash=False
    )


RemoteObject = Union[Folder, Report]


def _escape_char(match: re.Match) -> str:
    # 按 UTF-16 编码单元转为 _xHHHH
    encoded = match.group().encode("utf-16-be")
    return "".join(
        f"_x{int.from_bytes(encoded[i:i + 2], 'big'):04X}"
        for i in range(0, len(encoded), 2)
    )


def cognos_escape(component: str) -> str:
    """
    按 Cognos 规则转义路径组件

    Examples:
        >>> cognos_escape("a_b c")
        'a_x005Fb__c'
        >>> cognos_escape("Grades (2024)")
        'Grades___x00282024_x0029'
    """
    # "_" 先转为 "_x005F"，空格再转为 "__"，避免二者混淆
    component = component.replace("_", "_x005F")
    component = component.replace(" ", "__")
    return _WEIRD_CHARS.sub(_escape_char, component)


def make_namespace_and_dsn(namespace: str, dsn: str) -> str:
    """登录时设置命名空间和 DSN 的 JSON 载荷"""
    return json.dumps(
        {
            "parameters": [
                {"name": "h_CAM_action", "value": "logonAs"},
                {"name": "CAMNamespace", "value": namespace},
                {"name": "dsn", "value": dsn},
            ]
        }
    )


def make_answers_xml(prompt_answers: dict[str, str]) -> str:
    """将 {参数名: 值} 转为 Cognos 需要的 promptAnswers XML（未 URL 编码）"""
    root = ElementTree.Element("promptAnswers")
    for name in sorted(prompt_answers):
        prompt_value = ElementTree.SubElement(root, "promptValues")
        ElementTree.SubElement(prompt_value, "name").text = name
        values = ElementTree.SubElement(prompt_value, "values")
        item = ElementTree.SubElement(values, "item")
        simple = ElementTree.SubElement(item, "SimplePValue")
        ElementTree.SubElement(simple, "inclusive").text = "true"
        ElementTree.SubElement(simple, "useValue").text = prompt_answers[name]
    return ElementTree.tostring(root, encoding="unicode")


def _local_name(tag: str) -> str:
    """去掉 XML 命名空间前缀"""
    return tag.rsplit("}", 1)[-1]


def _parse_xml(xml_text: str) -> ElementTree.Element:
    try:
        return ElementTree.fromstring(xml_text)
    except ElementTree.ParseError as e:
        raise RemoteUnavailableError(f"无法解析 Cognos 返回的 XML: {e}") from e


def _child_text(element: ElementTree.Element, name: str) -> str:
    for child in element:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_wsil(xml_text: str) -> list[tuple[str, str, str]]:
    """
    解析 WSIL 目录列表

    Returns:
        list: [(类型, 名称, location)]，<link> 为文件夹（folder），<service> 为报表（report）
    """
    root = _parse_xml(xml_text)
    entries = []
    for element in root:
        kind = _local_name(element.tag)
        if kind == "link":
            entries.append(("folder", _child_text(element, "abstract"), element.get("location", "")))
        elif kind == "service":
            location = ""
            for child in element:
                if _local_name(child.tag) == "description":
                    location = child.get("location", "")
                    break
            entries.append(("report", _child_text(element, "abstract"), location))
    return entries


class CognosSession:
    """Cognos 会话（单个命名空间 + DSN）"""

    def __init__(
        self,
        user: str,
        password: str,
        url: str,
        namespace: str,
        dsn: str,
        retry_delay: float = 5,
        retry_count: int = 3,
        http_timeout: float = 300,
        concurrent_requests: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user = user
        self.url = url
        self.namespace = namespace
        self.dsn = dsn
        self.retry_delay = retry_delay
        self.retry_count = retry_count
        self._account_id: Optional[str] = None
        self._root: Optional[Folder] = None
        self._semaphore = asyncio.Semaphore(concurrent_requests)
        # httpx 客户端自带 cookie jar；反向代理先用 Basic 认证，质询时升级为 NTLM
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            auth=NegotiatingAuth(user, password),
            timeout=http_timeout,
            transport=transport,
            follow_redirects=True,
            headers={"Accept": "*/*"},
        )

    @classmethod
    async def create(
        cls,
        user: str,
        password: str,
        url: str,
        namespace: str,
        dsn: str,
        retry_delay: float = 5,
        retry_count: int = 3,
        http_timeout: float = 300,
        concurrent_requests: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CognosSession":
        """创建会话并完成登录，登录失败时抛出 RemoteAuthenticationError"""
        session = cls(
            user,
            password,
            url,
            namespace,
            dsn,
            retry_delay=retry_delay,
            retry_count=retry_count,
            http_timeout=http_timeout,
            concurrent_requests=concurrent_requests,
            transport=transport,
        )
        try:
            await session._login()
        except BaseException:
            await session.close()
            raise
        return session

    async def __aenter__(self) -> "CognosSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def account_id(self) -> Optional[str]:
        return self._account_id

    async def _login(self) -> None:
        """设置命名空间/DSN 并获取账户 ID（解析 "My Folders" 需要）"""
        try:
            # 这不是文档化的 API，是观察浏览器行为得到的
            await self.request(
                "POST", LOGIN_PATH, make_namespace_and_dsn(self.namespace, self.dsn)
            )
            self._root = await self._list_root()
        except RemoteAuthenticationError:
            raise
        except RemoteUnavailableError as e:
            raise RemoteAuthenticationError(
                f"Cognos 登录失败: {self.user}@{self.dsn}: {e.message}"
            ) from e

        my_folders = self._root.children.get(MY_FOLDERS)
        if my_folders is None:
            raise RemoteAuthenticationError("Cognos 目录中找不到 My Folders")

        # 账户 ID 是 My Folders 链接中倒数第二个路径组件，如 CAMID("esp:a:0401jpenn")
        link = unquote(my_folders.location).rstrip("/")
        components = link.split("/")
        if len(components) < 2 or not components[-2]:
            raise RemoteAuthenticationError(f"无法从链接解析账户 ID: {link}")
        self._account_id = components[-2]
        logger.debug(f"Cognos 账户 ID: {self._account_id}")

    async def request(self, method: str, link: str, body: str = "") -> str:
        """
        发送请求并返回响应文本

        等待并发槽位（不超时），失败时按固定间隔重试 retry_count 次，
        retry_count 为负数时无限重试。非 200 响应视为失败。

        Raises:
            RemoteUnavailableError: 重试耗尽
        """
        async with self._semaphore:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await self._send(method, link, body)
                except (httpx.HTTPError, CognosResponseError) as e:
                    if 0 <= self.retry_count < attempt:
                        logger.error(f"Cognos 请求失败，已达到最大重试次数: {link}: {e}")
                        raise RemoteUnavailableError(f"Cognos 请求失败: {link}") from e

                    logger.warning(
                        f"Cognos 请求失败（第 {attempt} 次），{self.retry_delay}秒后重试: {link}: {e}"
                    )
                    await asyncio.sleep(self.retry_delay)

    async def _send(self, method: str, link: str, body: str) -> str:
        headers = {}
        if body:
            # 目前只遇到两种请求体：以 "{" 开头的是 JSON，其余按表单处理
            if body.startswith("{"):
                headers["Content-Type"] = "application/json"
            else:
                headers["Content-Type"] = "application/x-www-form-urlencoded"

        response = await self._client.request(
            method, link, content=body.encode("utf-8") if body else None, headers=headers
        )
        if response.status_code != 200:
            raise CognosResponseError(response.status_code, response.text)
        return response.text

    def encode_path(self, path: list[str] | tuple[str, ...]) -> str:
        """将后端路径编码为 Cognos URL 形式，"~" 展开为 账户 ID/My Folders"""
        components = list(path)
        if not components:
            raise RemoteObjectNotFound("路径至少需要 1 个组件")

        if components[0] == CURRENT_USER_MARKER:
            if self._account_id is None:
                raise RemoteAuthenticationError("会话尚未获取账户 ID")
            components = [self._account_id, MY_FOLDERS] + components[1:]

        return "/".join(cognos_escape(component) for component in components)

    def _build_folder(
        self, path: tuple[str, ...], location: str, xml_text: str
    ) -> Folder:
        children: dict[str, RemoteObject] = {}
        for kind, name, child_location in parse_wsil(xml_text):
            child_path = path + (name,)
            if kind == "folder":
                children[name] = Folder(child_path, child_location)
            else:
                children[name] = Report(child_path, child_location)
        return Folder(path, location, children)

    async def _list_root(self) -> Folder:
        """列出顶层目录（Public Folders、My Folders 等）"""
        xml_text = await self.request("GET", WSIL_PATH)
        root = self._build_folder((), WSIL_PATH, xml_text)
        my_folders = root.children.get(MY_FOLDERS)
        if isinstance(my_folders, Folder):
            # 当前用户的 My Folders 用 "~" 寻址
            root.children[MY_FOLDERS] = Folder((CURRENT_USER_MARKER,), my_folders.location)
        return root

    async def list_folder(self, path: list[str] | tuple[str, ...]) -> Folder:
        """列出文件夹内容"""
        path = tuple(path)
        link = f"{WSIL_PATH}/path/{self.encode_path(path)}"
        xml_text = await self.request("GET", link)
        return self._build_folder(path, link, xml_text)

    async def resolve(self, path: list[str] | tuple[str, ...]) -> RemoteObject:
        """
        将后端路径解析为文件夹或报表

        第一个组件为顶层目录名（"~" 表示当前用户的 My Folders），
        之后逐级列出文件夹并按名称匹配。返回的文件夹已包含子对象。

        Raises:
            RemoteObjectNotFound: 路径上某一级不存在，或报表下还有子路径
        """
        path = tuple(path)
        if not path:
            raise RemoteObjectNotFound("路径至少需要 1 个组件")

        if self._root is None:
            self._root = await self._list_root()

        root_name = MY_FOLDERS if path[0] == CURRENT_USER_MARKER else path[0]
        current = self._root.children.get(root_name)
        if current is None:
            raise RemoteObjectNotFound(f"Cognos 顶层目录不存在: {path[0]}")

        for depth, component in enumerate(path[1:], start=1):
            if isinstance(current, Report):
                raise RemoteObjectNotFound(
                    f"报表下不能有子路径: {'/'.join(path[:depth])}"
                )
            folder = await self.list_folder(current.path)
            child = folder.children.get(component)
            if child is None:
                raise RemoteObjectNotFound(f"Cognos 中不存在: {'/'.join(path[:depth + 1])}")
            current = child

        if isinstance(current, Folder):
            return await self.list_folder(current.path)
        return current

    async def list_report_prompts(self, path: list[str] | tuple[str, ...]) -> list[str]:
        """列出报表的提示参数名称"""
        link = f"{REPORT_PROMPTS_PATH}/{self.encode_path(path)}"
        root = _parse_xml(await self.request("GET", link))
        return [
            (element.text or "").strip()
            for element in root.iter()
            if _local_name(element.tag) == "pname"
        ]

    async def download_report_csv(
        self,
        path: list[str] | tuple[str, ...],
        prompt_answers: Optional[dict[str, str]] = None,
    ) -> str:
        """
        下载报表 CSV

        同步触发报表执行（async=OFF），可能耗时较长，只受会话的 http_timeout 限制。
        """
        link = f"{OUTPUT_FORMAT_PATH}/{self.encode_path(path)}/CSV?async=OFF"
        if prompt_answers:
            link += "&xmlData=" + quote(make_answers_xml(prompt_answers), safe="")
        return await self.request("GET", link)
