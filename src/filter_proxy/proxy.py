"""HTTP リバースプロキシハンドラー

ポリシーで許可されたリクエストだけを上流サーバーに転送する
"""

import aiohttp
import structlog
from aiohttp import web
from multidict import CIMultiDict
from yarl import URL

from .audit import AuditLog
from .policy import Action, Decision, PolicySet
from .redirect import RedirectRewriter

logger = structlog.get_logger()

FORBIDDEN_BODY = {"error": "Forbidden: Access denied"}

# 転送しないホップバイホップヘッダー (RFC 7230)
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

DOT_SEGMENT_REASON = "path contains dot segments"


def has_dot_segments(path: str) -> bool:
    """パスに ``.`` または ``..`` セグメントが含まれるか判定する

    上流はこれらを正規化するため、評価したパスと転送先のパスが食い違う
    """
    return any(segment in (".", "..") for segment in path.split("/"))


def _forward_headers(headers, excluded: tuple[str, ...]) -> CIMultiDict:
    # Connection ヘッダーで指定されたヘッダーもホップバイホップとして扱う
    dropped = set(HOP_BY_HOP).union(excluded)
    for value in headers.getall("Connection", ()):
        dropped.update(token.strip().lower() for token in value.split(","))
    return CIMultiDict((k, v) for k, v in headers.items() if k.lower() not in dropped)


def policy_middleware(policy: PolicySet, audit: AuditLog | None = None):
    """転送前にポリシーを評価するミドルウェアを作成する

    Args:
        policy: 評価に使う PolicySet
        audit: 判定結果を記録する監査ログ (省略可)

    Returns:
        aiohttp のミドルウェア
    """

    @web.middleware
    async def middleware(request: web.Request, handler):
        log = logger.bind(method=request.method, path=request.path)

        if has_dot_segments(request.path):
            if audit is not None:
                audit.record(request.method, request.path, Decision(Action.DENY), DOT_SEGMENT_REASON)
            log.info("request_denied", reason=DOT_SEGMENT_REASON, rule=None, rule_line=None)
            return web.json_response(FORBIDDEN_BODY, status=403)

        decision = policy.evaluate(request.method, request.path)
        rule = decision.matched_rule

        if audit is not None:
            audit.record(request.method, request.path, decision)

        if not decision.allowed:
            log.info(
                "request_denied",
                reason=decision.reason,
                rule=str(rule) if rule else None,
                rule_line=rule.line_no if rule else None,
            )
            return web.json_response(FORBIDDEN_BODY, status=403)

        log.info("request_allowed", rule=str(rule), rule_line=rule.line_no)
        return await handler(request)

    return middleware


class ProxyHandler:
    """上流サーバーへのリバースプロキシを提供するハンドラー"""

    def __init__(self, remote_url: str, rewriter: RedirectRewriter | None = None):
        """ProxyHandler を初期化する

        Args:
            remote_url: プロキシ先の URL
            rewriter: 上流レスポンスの Location ヘッダーを書き換えるフック
        """
        self.remote_url = remote_url.rstrip("/")
        self.rewriter = rewriter

    async def handle_proxy(self, request: web.Request) -> web.Response:
        """リクエストをリモートサーバーに転送し、レスポンスを返す

        リダイレクトは追跡せず、上流のレスポンスをそのまま返す

        Args:
            request: HTTP リクエストオブジェクト

        Returns:
            リモートサーバーからのレスポンス
        """
        # ターゲット URL を構築 (クライアントが送ったエンコードのままのパスとクエリ)
        target_url = URL(f"{self.remote_url}{request.rel_url.raw_path_qs}", encoded=True)

        async with aiohttp.ClientSession() as session:
            try:
                # Host は上流のものに置き換わる
                headers = _forward_headers(request.headers, ("host", "content-length"))

                data = await request.read() if request.body_exists else None

                async with session.request(
                    method=request.method,
                    url=target_url,
                    headers=headers,
                    data=data,
                    allow_redirects=False,
                ) as resp:
                    body = await resp.read()

                    response_headers = _forward_headers(
                        resp.headers, ("content-encoding", "content-length")
                    )

                    if self.rewriter is not None:
                        self.rewriter.apply(response_headers)

                    return web.Response(body=body, status=resp.status, headers=response_headers)
            except aiohttp.ClientError as e:
                logger.error("proxy_client_error", url=str(target_url), error=str(e))
                return web.Response(text=f"Proxy error: {str(e)}", status=502)
