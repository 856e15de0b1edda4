"""アクセス制御ポリシーのコンパイルと評価

ルールファイルの書式 (1 行 1 ルール)::

    # コメント
    ALLOW GET /public/*
    DENY  GET /public/secret

ルールはファイルの上から順に評価され、最後にマッチしたルールが採用される。
どのルールにもマッチしなければ拒否する。
"""

import enum
import functools
import re
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()


class PolicyError(ValueError):
    """ルールファイルの読み込みエラー"""


class Action(enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass(frozen=True)
class Rule:
    """コンパイル済みのルール"""

    action: Action
    method: str
    pattern: str
    matcher: re.Pattern
    line_no: int = 0

    def matches(self, method: str, path: str) -> bool:
        return self.method == method and self.matcher.fullmatch(path) is not None

    def __str__(self) -> str:
        return f"{self.action.value} {self.method} {self.pattern}"


@dataclass(frozen=True)
class Decision:
    """1 リクエストに対する評価結果"""

    outcome: Action
    matched_rule: Rule | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Action.ALLOW

    @property
    def reason(self) -> str:
        if self.matched_rule is None:
            return "default policy, no matching rule"
        if self.allowed:
            return "matched allow rule"
        return "matched deny rule"


DEFAULT_DECISION = Decision(Action.DENY)


def compile_pattern(pattern: str) -> re.Pattern:
    """グロブ風のパスパターンを正規表現にコンパイルする

    ``*`` は ``/`` を含む任意の 0 文字以上にマッチする。
    ``?`` はワイルドカードではなくリテラルの ``?`` として扱う。
    それ以外の文字はすべてリテラル。マッチはパス全体に対して行う。

    Args:
        pattern: パスパターン

    Returns:
        コンパイル済みの正規表現 (``fullmatch`` で使用する)
    """
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(regex, re.DOTALL)


def parse_rule(line: str, line_no: int = 0) -> Rule:
    """1 行分のルールを解析する

    Raises:
        PolicyError: フィールド数またはアクションが不正な場合
    """
    parts = line.split()
    if len(parts) != 3:
        raise PolicyError(
            f"Invalid rule format at line {line_no}: {line}. Expected: <ALLOW|DENY> <METHOD> <PATH>"
        )

    action, method, pattern = parts
    try:
        action = Action(action.upper())
    except ValueError:
        raise PolicyError(
            f"Invalid rule action at line {line_no}: {line}. Expected ALLOW or DENY"
        ) from None

    return Rule(
        action=action,
        method=method.upper(),
        pattern=pattern,
        matcher=compile_pattern(pattern),
        line_no=line_no,
    )


@dataclass(frozen=True)
class PolicySet:
    """読み込み後に変更されないルールの列"""

    rules: tuple[Rule, ...] = ()
    source: str = "<string>"

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def evaluate(self, method: str, path: str) -> Decision:
        return evaluate(self, method, path)


def parse_policy(text: str, source: str = "<string>") -> PolicySet:
    """ルールファイルの内容全体を PolicySet に変換する

    空行と ``#`` で始まる行は無視する。1 行でも不正な行があれば全体を失敗とする。

    Args:
        text: ルールファイルの内容
        source: エラーメッセージやログに使う読み込み元の名前

    Returns:
        ファイル順にルールを保持した PolicySet

    Raises:
        PolicyError: 不正な行が含まれる場合
    """
    rules = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        rules.append(parse_rule(stripped, line_no))
    return PolicySet(tuple(rules), source)


def load_policy(path: str | Path) -> PolicySet:
    """ルールファイルを UTF-8 で読み込み PolicySet を返す

    Raises:
        PolicyError: ファイルが読めない場合、または内容が不正な場合
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PolicyError(f"Cannot read rule file {path}: {e}") from e

    policy = parse_policy(text, source=str(path))
    logger.debug("policy_loaded", source=str(path), rules=len(policy))
    return policy


def _apply_rule(method: str, path: str, decision: Decision, rule: Rule) -> Decision:
    if rule.matches(method, path):
        return Decision(rule.action, rule)
    return decision


def evaluate(policy: PolicySet, method: str, path: str) -> Decision:
    """リクエストのメソッドとパスをポリシーで評価する

    すべてのルールを順に畳み込み、最後にマッチしたルールのアクションを採用する。
    マッチするルールがなければデフォルトで拒否する。

    Args:
        policy: 評価に使う PolicySet
        method: HTTP メソッド (大文字に正規化して比較する)
        path: リクエストパス (クエリ文字列を含まない)

    Returns:
        Decision
    """
    step = functools.partial(_apply_rule, method.upper(), path)
    return functools.reduce(step, policy.rules, DEFAULT_DECISION)
