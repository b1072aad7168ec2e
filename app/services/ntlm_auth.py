"""
@description Basic / NTLM 协商认证
@responsibility 先以 Basic 认证发送请求；反向代理返回 NTLM/Negotiate 质询时升级为 NTLM 握手
"""

import base64
import binascii
from typing import Generator, Optional

import httpx
import spnego
from loguru import logger
from spnego.exceptions import SpnegoError

from app.core.errors import RemoteAuthenticationError

# 代理可能以任一方案发起质询，令牌都是 NTLM
_NTLM_SCHEMES = ("NTLM", "Negotiate")


def _find_challenge(response: httpx.Response) -> Optional[tuple[str, Optional[bytes]]]:
    """
    从 WWW-Authenticate 中找出 NTLM 质询

    Returns:
        tuple: (方案名, 质询令牌)，只有方案名时令牌为 None；没有 NTLM 质询时返回 None
    """
    for header in response.headers.get_list("www-authenticate"):
        for offer in header.split(","):
            parts = offer.strip().split(None, 1)
            if not parts:
                continue
            for scheme in _NTLM_SCHEMES:
                if parts[0].lower() == scheme.lower():
                    if len(parts) < 2:
                        return scheme, None
                    try:
                        return scheme, base64.b64decode(parts[1], validate=True)
                    except binascii.Error:
                        logger.warning(f"无法解析 {scheme} 质询令牌")
                        return scheme, None
    return None


class NegotiatingAuth(httpx.Auth):
    """
    先 Basic、按质询升级 NTLM 的认证流程

    1. 带 Basic 认证发送请求
    2. 若返回 401 且提供 NTLM/Negotiate 质询，发送 NTLM 协商消息
    3. 收到服务器质询后发送 NTLM 认证消息
    """

    def __init__(self, user: str, password: str):
        self._user = user
        self._password = password
        credentials = f"{user}:{password}".encode("utf-8")
        self._basic_header = f"Basic {base64.b64encode(credentials).decode()}"

    def _client_context(self, request: httpx.Request):
        return spnego.client(
            self._user,
            self._password,
            hostname=request.url.host,
            service="HTTP",
            protocol="ntlm",
        )

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = self._basic_header
        response = yield request

        if response.status_code != 401:
            return
        offer = _find_challenge(response)
        if offer is None:
            return

        scheme = offer[0]
        logger.debug(f"代理要求 {scheme} 认证，开始 NTLM 握手: {request.url.host}")
        context = self._client_context(request)

        try:
            negotiate = context.step()
        except SpnegoError as e:
            raise RemoteAuthenticationError(f"生成 NTLM 协商消息失败: {e}") from e
        request.headers["Authorization"] = f"{scheme} {base64.b64encode(negotiate).decode()}"
        response = yield request

        if response.status_code != 401:
            return
        challenge = _find_challenge(response)
        if challenge is None or challenge[1] is None:
            return

        try:
            authenticate = context.step(challenge[1])
        except SpnegoError as e:
            raise RemoteAuthenticationError(f"NTLM 质询处理失败: {e}") from e
        request.headers["Authorization"] = f"{scheme} {base64.b64encode(authenticate).decode()}"
        yield request
