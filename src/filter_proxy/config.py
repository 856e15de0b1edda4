"""プロキシ設定とコマンドライン引数の解析

アドレスを (host, port) の値型として扱い、文字列比較による取り違えを防ぐ
"""

import argparse
from dataclasses import dataclass

from yarl import URL

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class Address:
    """ホスト名とポート番号の組

    ポートがスキームのデフォルトポートと一致する場合は None に正規化する
    """

    host: str
    port: int | None = None

    @classmethod
    def parse(cls, value: str) -> "Address":
        """``host`` / ``host:port`` / ``[ipv6]`` / ``[ipv6]:port`` 形式の文字列を解析する

        IPv6 アドレスは角括弧を外したホスト名として保持する

        Args:
            value: 解析する文字列

        Returns:
            Address インスタンス

        Raises:
            ValueError: 形式が不正な場合
        """
        text = value.strip()
        if text.startswith("["):
            host, sep, rest = text[1:].partition("]")
            if not sep or (rest and not rest.startswith(":")):
                raise ValueError(f"Invalid address: {value!r}")
            port = rest[1:]
            has_port = bool(rest)
        else:
            host, sep, port = text.rpartition(":")
            if not sep:
                host, port = port, ""
            has_port = bool(sep)
            if ":" in host:
                raise ValueError(f"IPv6 address must be enclosed in brackets: {value!r}")
        if not host:
            raise ValueError(f"Invalid address: {value!r}")
        if not has_port:
            return cls(host.lower())
        if not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f"Invalid port in address: {value!r}")
        return cls(host.lower(), int(port))

    @classmethod
    def from_url(cls, url: URL) -> "Address":
        """URL のホスト部分から Address を作成する"""
        port = url.explicit_port
        if port is not None and DEFAULT_PORTS.get(url.scheme) == port:
            port = None
        return cls((url.host or "").lower(), port)

    def for_scheme(self, scheme: str) -> "Address":
        """指定スキームのデフォルトポートを None に正規化したコピーを返す"""
        if self.port is not None and DEFAULT_PORTS.get(scheme) == self.port:
            return Address(self.host)
        return self

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None:
            return host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class ProxyConfig:
    """起動時に確定するプロキシ設定"""

    target_url: str
    listen: Address
    public_address: Address
    rules_path: str
    audit_db: str | None = None


def _listen_address(value: str) -> Address:
    try:
        address = Address.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    if address.port is None:
        raise argparse.ArgumentTypeError(f"Listen address requires host:port: {value!r}")
    return address


def _public_address(value: str) -> Address:
    try:
        return Address.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _target_url(value: str) -> str:
    url = URL(value)
    if url.scheme not in DEFAULT_PORTS or not url.host:
        raise argparse.ArgumentTypeError(f"Target must be an absolute http(s) URL: {value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    """コマンドライン引数パーサーを作成する"""
    parser = argparse.ArgumentParser(
        prog="filter-proxy",
        description="Filter Proxy - Reverse proxy that forwards only requests allowed by a rule file",
        epilog="Example: filter-proxy http://example.com 0.0.0.0:8080 proxy.example.com:8080 allowlist.txt",
    )
    parser.add_argument("target_url", type=_target_url, help="Upstream URL to forward to")
    parser.add_argument("listen", type=_listen_address, help="host:port to listen on")
    parser.add_argument(
        "public_address",
        type=_public_address,
        help="Public host:port substituted into upstream redirects",
    )
    parser.add_argument("rules", help="Path to the allowlist rule file")
    parser.add_argument(
        "--audit-db",
        type=str,
        default=None,
        help="DuckDB file to record every access decision (default: disabled)",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> ProxyConfig:
    """コマンドライン引数を解析して ProxyConfig を返す

    位置引数が 4 つでない場合は argparse が使い方を表示して終了する
    """
    args = build_parser().parse_args(argv)
    return ProxyConfig(
        target_url=args.target_url,
        listen=args.listen,
        public_address=args.public_address,
        rules_path=args.rules,
        audit_db=args.audit_db,
    )
