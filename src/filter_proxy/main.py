import asyncio
import logging
import signal
import sys

from aiohttp import web

from .audit import AuditLog
from .config import ProxyConfig, parse_args
from .policy import PolicyError, PolicySet, load_policy
from .proxy import ProxyHandler, policy_middleware
from .redirect import RedirectRewriter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def create_app(
    policy: PolicySet, config: ProxyConfig, audit: AuditLog | None = None
) -> web.Application:
    """Web アプリケーションを作成し、ルーティングを設定する

    Args:
        policy: 転送前に評価する PolicySet
        config: プロキシ設定
        audit: 判定結果を記録する監査ログ (省略可)

    Returns:
        設定済みの aiohttp Application インスタンス
    """
    app = web.Application(middlewares=[policy_middleware(policy, audit)])

    rewriter = RedirectRewriter(config.target_url, config.public_address)
    proxy_handler = ProxyHandler(config.target_url, rewriter)

    # すべてのリクエストをプロキシハンドラーに転送
    app.router.add_route("*", "/{path:.*}", proxy_handler.handle_proxy)

    return app


async def main(argv: list[str] | None = None):
    """メインの非同期エントリーポイント

    ルールファイルを読み込んでからサーバーを起動する。
    読み込みに失敗した場合はリスナーを開く前に終了コード 1 で終了する
    """
    config = parse_args(argv)

    try:
        policy = load_policy(config.rules_path)
    except PolicyError as e:
        logger.error(f"Error loading allowlist: {e}")
        sys.exit(1)

    audit = None
    runner = None

    # シャットダウンイベント (グレースフルシャットダウン用)
    shutdown_event = asyncio.Event()

    def signal_handler(_signum, _frame):
        shutdown_event.set()

    try:
        audit = AuditLog(config.audit_db) if config.audit_db else None

        app = create_app(policy, config, audit)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, config.listen.host, config.listen.port)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        await site.start()
        logger.info(f"Proxy server listening on {config.listen}")
        logger.info(f"Public access URL: http://{config.public_address}")
        logger.info(f"Forwarding allowed requests to {config.target_url}")
        logger.info(f"Loaded {len(policy)} rules from {policy.source}")
        if audit is not None:
            logger.info(f"Recording decisions to {config.audit_db}")

        await shutdown_event.wait()
    finally:
        logger.info("Shutting down gracefully...")
        if runner is not None:
            await runner.cleanup()
        if audit is not None:
            audit.close()
        logger.info("Server shutdown complete")


def run_server():
    """エントリポイント用のラッパー関数"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run_server()
