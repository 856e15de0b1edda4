"""上流レスポンスのリダイレクト先書き換え

上流サーバー自身を指す Location ヘッダーを、プロキシの公開アドレスに置き換える
"""

import structlog
from multidict import CIMultiDict
from yarl import URL

from .config import Address

logger = structlog.get_logger()

# TLS 終端は行わないため書き換え後のスキームは常に http
REWRITE_SCHEME = "http"


def rewrite_location(location: str, target_url: str | URL, public_address: Address) -> str:
    """リダイレクト先を公開アドレスに書き換える

    Args:
        location: 上流から返された Location ヘッダーの値 (相対 URL も可)
        target_url: 上流サーバーの URL。相対 URL の解決に使う
        public_address: クライアントに見せるプロキシのアドレス

    Returns:
        書き換え後の値。上流以外を指す場合や解析できない場合は元の値
    """
    try:
        target = URL(target_url)
        resolved = target.join(URL(location))
        if Address.from_url(resolved) != Address.from_url(target):
            return location

        public = public_address.for_scheme(REWRITE_SCHEME)
        rewritten = resolved.with_scheme(REWRITE_SCHEME).with_host(public.host).with_port(public.port)
    except ValueError as e:
        logger.warning("location_parse_error", location=location, error=str(e))
        return location

    return str(rewritten)


class RedirectRewriter:
    """上流レスポンスのヘッダーに適用する後処理フック"""

    def __init__(self, target_url: str, public_address: Address):
        """RedirectRewriter を初期化する

        Args:
            target_url: 上流サーバーの URL
            public_address: 書き換え先の公開アドレス
        """
        self.target_url = URL(target_url)
        self.public_address = public_address

    def rewrite(self, location: str) -> str:
        return rewrite_location(location, self.target_url, self.public_address)

    def apply(self, headers: CIMultiDict) -> None:
        """Location ヘッダーがあればその場で書き換える"""
        location = headers.get("Location")
        if location is None:
            return

        rewritten = self.rewrite(location)
        if rewritten != location:
            headers["Location"] = rewritten
            logger.info("redirect_rewritten", original=location, location=rewritten)
