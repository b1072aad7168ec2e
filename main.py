"""
@description FastAPI 应用入口
@responsibility 初始化网关上下文、集成路由、启动缓存清理任务、统一异常处理
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api import reports, system
from app.api.reports import init_reports_router
from app.api.system import init_system_router
from app.core.context import GatewayContext
from app.core.errors import AuthenticationError, GatewayError
from app.schemas.api import ApiResponse, error_response, success_response
from app.services.access import AccessController
from app.services.gateway import ReportGateway
from app.tasks.sweeper import CacheSweeper

AUTH_REALM = 'Basic realm="Cognos Report Gateway"'

context: Optional[GatewayContext] = None
cache_sweeper: Optional[CacheSweeper] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global context, cache_sweeper

    logger.info("应用启动中...")

    context = await GatewayContext.load()

    gateway = ReportGateway(context)
    access = AccessController(context)
    cache_sweeper = CacheSweeper(context.cache, context.config)

    init_reports_router(context, gateway, access)
    init_system_router(context, cache_sweeper)

    await cache_sweeper.start()
    logger.info("后台缓存清理任务已启动")

    yield

    if cache_sweeper:
        await cache_sweeper.stop()

    await context.close()
    logger.info("应用已关闭")


app = FastAPI(
    title="Cognos 报表网关",
    description="以 CSV 或 JSON 形式发布 Cognos 报表，带缓存和访问控制",
    version="1.0.0",
    lifespan=lifespan,
)

# 跨域：允许任意来源，浏览器通过 X-API-Key 传递密码
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["X-API-Key"],
)


# 全局异常处理器
@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    """处理网关异常"""
    if exc.status_code >= 500:
        logger.error(f"网关错误 {exc.status_code}: {exc.message}")
    else:
        logger.info(f"请求被拒绝 {exc.status_code}: {exc.message}")

    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": AUTH_REALM}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.status_code, exc.message).model_dump(),
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """处理 HTTP 异常"""
    logger.info(f"HTTP 异常处理器被调用: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse(
            code=exc.status_code, message=exc.detail, data=None
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """处理请求参数验证错误"""
    logger.info(f"验证错误处理器被调用: {len(exc.errors())} 个错误")
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ApiResponse(
            code=422, message="请求参数验证失败", data={"errors": errors}
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """处理通用异常"""
    logger.info(f"通用异常处理器被调用: {type(exc).__name__}")
    logger.exception(f"服务器内部错误: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content=ApiResponse(code=500, message="服务器内部错误", data=None).model_dump(),
    )


app.include_router(reports.router, prefix="/api", tags=["reports"])
app.include_router(system.router, prefix="/api", tags=["system"])


@app.get("/")
async def root():
    return success_response(
        data={"message": "Cognos 报表网关 API", "version": "1.0.0"},
        message="服务运行中",
    )


@app.get("/health")
async def health_check():
    return success_response(data={"status": "healthy"}, message="健康检查通过")
