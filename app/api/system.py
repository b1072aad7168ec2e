"""
@description 系统状态接口
@responsibility 处理系统状态和缓存清理任务状态的查询
"""

from typing import TYPE_CHECKING, Optional

from fastapi import APIRouter

from app.schemas.api import ApiResponse, StatusResponse, success_response

if TYPE_CHECKING:
    from app.core.context import GatewayContext
    from app.tasks.sweeper import CacheSweeper

router = APIRouter()

_context: Optional["GatewayContext"] = None
_sweeper: Optional["CacheSweeper"] = None


def init_system_router(context: "GatewayContext", sweeper: "CacheSweeper"):
    global _context, _sweeper
    _context = context
    _sweeper = sweeper


@router.get("/status", response_model=ApiResponse[StatusResponse])
async def get_status():
    sweeper_running = _sweeper is not None and _sweeper.running

    cache_entries = 0
    if _context is not None:
        cache_entries = _context.cache.count()

    return success_response(
        data=StatusResponse(
            sweeper_running=sweeper_running,
            cache_entries=cache_entries,
            default_max_age=_context.config.cache.max_age if _context else 0,
        ),
        message="获取系统状态成功",
    )
