"""
@description 命令行入口
@responsibility 启动 Web 服务、按使用记录预热缓存、手动清理过期缓存
"""

import argparse
import asyncio
import sys

from loguru import logger

from app.core.context import GatewayContext
from app.services.gateway import ReportGateway


async def _warm(used_within: int) -> int:
    context = await GatewayContext.load()
    try:
        refreshed, failed = await ReportGateway(context).warm(used_within)
    finally:
        await context.close()
    print(f"预热完成: 成功 {refreshed}, 失败 {failed}")
    return 0


async def _sweep() -> int:
    context = await GatewayContext.load()
    try:
        deleted = await asyncio.to_thread(context.cache.sweep, context.config.cache.max_age)
    finally:
        await context.close()
    print(f"已清理 {deleted} 个过期缓存条目")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="report-gateway",
        description="Cognos 报表网关",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 启动 Web 服务
  report-gateway serve --host 127.0.0.1 --port 8080

  # 刷新最近 1 天内被请求过的报表（适合放在定时任务中）
  report-gateway warm 86400

配置文件默认为项目根目录的 config.yaml，可通过 CONFIG_PATH 环境变量指定。
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="启动 Web 服务（不支持 TLS）")
    serve_parser.add_argument("--host", default="127.0.0.1", help="监听地址")
    serve_parser.add_argument("--port", type=int, default=8080, help="监听端口")

    warm_parser = subparsers.add_parser("warm", help="预热最近使用过的报表缓存")
    warm_parser.add_argument("used_within", type=int, help="最近多少秒内使用过的报表")

    subparsers.add_parser("sweep", help="清理过期缓存")

    args = parser.parse_args(argv)

    if args.command == "serve":
        import uvicorn

        logger.warning("内置 Web 服务不支持 TLS，请在反向代理后使用")
        uvicorn.run("main:app", host=args.host, port=args.port)
        return 0

    if args.command == "warm":
        if args.used_within < 0:
            parser.error("used_within 不能为负数")
        return asyncio.run(_warm(args.used_within))

    return asyncio.run(_sweep())


if __name__ == "__main__":
    sys.exit(main())
