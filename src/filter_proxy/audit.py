"""アクセス判定の監査ログ

すべての判定結果を DuckDB に記録する
"""

from datetime import datetime

import duckdb
import structlog

from .policy import Decision

logger = structlog.get_logger()


class AuditLog:
    """DuckDB を使用して判定結果を記録するクラス"""

    def __init__(self, db_path: str = "audit.duckdb"):
        """DuckDB 接続を初期化し、必要なテーブルを作成する

        Args:
            db_path: データベースファイルのパス
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._init_tables()

    def _init_tables(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS decisions (
                timestamp TIMESTAMP,
                method VARCHAR,
                path VARCHAR,
                outcome VARCHAR,
                reason VARCHAR,
                rule_line INTEGER
            )
        """)
        self.conn.commit()

    def record(self, method: str, path: str, decision: Decision, reason: str | None = None):
        """判定結果を 1 件記録する

        Args:
            method: HTTP メソッド
            path: リクエストパス
            decision: 判定結果
            reason: 判定理由。省略時は decision.reason を使う
        """
        rule_line = decision.matched_rule.line_no if decision.matched_rule else None
        self.conn.execute(
            """
            INSERT INTO decisions (timestamp, method, path, outcome, reason, rule_line)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                datetime.now(),
                method,
                path,
                decision.outcome.value,
                reason or decision.reason,
                rule_line,
            ),
        )
        self.conn.commit()

    def execute_query(self, query: str) -> dict:
        """任意の SQL クエリを実行し、結果を返す

        Returns:
            クエリ結果を含む辞書 (columns と rows を含む)

        Raises:
            ValueError: クエリ実行に失敗した場合
        """
        try:
            cursor = self.conn.execute(query)
            result = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description]
        except duckdb.Error as e:
            raise ValueError(f"Query execution failed: {str(e)}") from e

        # datetime オブジェクトを文字列に変換
        rows = [
            [cell.isoformat() if isinstance(cell, datetime) else cell for cell in row]
            for row in result
        ]
        return {"columns": columns, "rows": rows}

    def close(self):
        """データベース接続を閉じる"""
        if hasattr(self, "conn"):
            self.conn.close()
            logger.debug("audit_log_closed", db_path=self.db_path)
