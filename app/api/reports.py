"""
@description 报表接口
@responsibility 解析请求（密码、输出格式、提示参数、Cache-Control），校验访问权限并返回报表/文件夹内容
"""

from typing import TYPE_CHECKING, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from loguru import logger

from app.core.errors import AuthenticationError, MalformedInputError
from app.services.gateway import parse_cache_control
from app.utils.helpers import parse_path

if TYPE_CHECKING:
    from app.core.context import GatewayContext
    from app.services.access import AccessController
    from app.services.gateway import ReportGateway

router = APIRouter()

_basic_auth = HTTPBasic(auto_error=False)

_context: Optional["GatewayContext"] = None
_gateway: Optional["ReportGateway"] = None
_access: Optional["AccessController"] = None


def init_reports_router(
    context: "GatewayContext", gateway: "ReportGateway", access: "AccessController"
):
    global _context, _gateway, _access
    _context = context
    _gateway = gateway
    _access = access


async def _read_prompt_answers(request: Request) -> dict[str, str]:
    """
    读取提示参数，支持 4 种方式：
    URL 参数、application/x-www-form-urlencoded、multipart/form-data、JSON 请求体
    """
    values: dict[str, str] = {}
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type.endswith("json"):
        try:
            body = await request.json()
        except ValueError as e:
            raise MalformedInputError(f"请求体不是合法的 JSON: {e}") from e
        if not isinstance(body, dict):
            raise MalformedInputError("JSON 请求体必须是对象")
        values.update({str(k): str(v) for k, v in body.items()})

    for key in request.query_params.keys():
        values[key] = request.query_params.getlist(key)[0]

    if content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        form = await request.form()
        for key in form.keys():
            value = form.getlist(key)[0]
            if isinstance(value, str):
                values[key] = value

    # JSON 允许 "\ud800" 这类单独的代理项转义，无法编码为 UTF-8
    for key, value in values.items():
        try:
            key.encode("utf-8")
            value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise MalformedInputError(f"提示参数不是合法的 UTF-8 文本: {key!r}") from e

    return values


@router.api_route("/reports/{report_path:path}", methods=["GET", "POST"])
async def get_report(
    report_path: str,
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic_auth),
):
    # Basic 认证的用户名只用于日志（调用方应用名）；X-API-Key 优先于 Basic 密码
    app_name = credentials.username if credentials else ""
    password = request.headers.get("x-api-key") or (credentials.password if credentials else "")
    if not password:
        raise AuthenticationError(
            "未授权: 请通过 HTTP Basic 认证的密码字段或 X-API-Key 请求头提供主密码或报表密码"
        )

    path = parse_path(report_path)
    if len(path) < 2 or not all(path):
        raise MalformedInputError("路径至少需要包含 DSN 和另一个组件，且组件不能为空")

    logger.info(f"请求 {report_path} 来自 {app_name or '未知应用'}")

    # 在校验权限前判断格式，需要去掉 .json 后缀
    as_json = "application/json" in request.headers.get("accept", "").lower()
    if path[-1].endswith(".json"):
        as_json = True
        path[-1] = path[-1][: -len(".json")]

    if not await _access.allowed_access(password, path):
        raise AuthenticationError("未授权: 密码无效或无权访问请求的资源")

    max_age, only_if_cached = parse_cache_control(
        request.headers.get("cache-control"), _context.config.cache.max_age
    )
    prompt_answers = await _read_prompt_answers(request)

    result = await _gateway.serve(
        path,
        as_json=as_json,
        prompt_answers=prompt_answers,
        max_age=max_age,
        only_if_cached=only_if_cached,
    )

    headers = {}
    if result.filename:
        headers["Content-Disposition"] = f'attachment; filename="{result.filename}"'
    return Response(content=result.body, media_type=result.media_type, headers=headers)
