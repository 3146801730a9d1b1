"""
判定マッピングモジュール
検証プロバイダの状態文字列・集計値を4区分（deliverable / undeliverable / risky / unknown）に正規化

JSON経由・CSV経由の両方の取り込みがこの1つの対応表を使うため、
同じ状態文字列の分類が経路によって食い違うことはない。

区分ポリシー:
- deliverable   = ok
- undeliverable = 構文エラー + MXエラー + メールボックスなし
- risky         = accept-all（キャッチオール） + 使い捨て + ロールアカウント
- unknown       = unknown（およびどれにも該当しないもの）
"""

import csv
import io
from dataclasses import dataclass, replace
from typing import Any, Optional

from models.validation import Verdict


@dataclass(frozen=True)
class Classification:
    """正規化された判定と付随フラグ"""
    verdict: Verdict = Verdict.UNKNOWN
    format_valid: bool = True
    domain_valid: bool = True
    smtp_valid: bool = False
    deliverable: bool = False
    catch_all: bool = False
    disposable: bool = False


@dataclass(frozen=True)
class StateRule:
    """状態文字列 → 判定 の1ルール"""
    classification: Classification
    exact: tuple[str, ...] = ()
    contains: tuple[str, ...] = ()

    def matches(self, value: str) -> bool:
        return value in self.exact or any(marker in value for marker in self.contains)


_BASE = Classification()

# 上から順に評価（具体的なサブ状態を先に置く）
STATE_RULES: tuple[StateRule, ...] = (
    StateRule(replace(_BASE, verdict=Verdict.UNDELIVERABLE, format_valid=False),
              contains=("failed_syntax", "syntax")),
    StateRule(replace(_BASE, verdict=Verdict.UNDELIVERABLE, domain_valid=False),
              contains=("failed_mx", "mx_check")),
    StateRule(replace(_BASE, verdict=Verdict.UNDELIVERABLE),
              contains=("no_mailbox", "failed_smtp")),
    StateRule(replace(_BASE, verdict=Verdict.RISKY, catch_all=True),
              contains=("accept_all", "ok_for_all", "catch_all")),
    StateRule(replace(_BASE, verdict=Verdict.RISKY, disposable=True),
              contains=("disposable",)),
    StateRule(replace(_BASE, verdict=Verdict.RISKY),
              contains=("role",)),
    StateRule(replace(_BASE, verdict=Verdict.DELIVERABLE, smtp_valid=True, deliverable=True),
              exact=("ok", "email_ok", "deliverable", "valid")),
    StateRule(replace(_BASE, verdict=Verdict.UNDELIVERABLE),
              exact=("invalid", "email_invalid", "undeliverable")),
    StateRule(replace(_BASE, verdict=Verdict.RISKY),
              exact=("risky",)),
    StateRule(_BASE,
              exact=("unknown",)),
)


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def classify(state: Optional[str], sub_state: Optional[str] = None) -> Classification:
    """
    プロバイダの email_state / email_sub_state を判定に変換

    サブ状態を優先し、該当しなければ状態で判定する。
    どちらにも該当しなければ unknown。
    """
    for value in (_normalize(sub_state), _normalize(state)):
        if not value:
            continue
        for rule in STATE_RULES:
            if rule.matches(value):
                return rule.classification
    return _BASE


def bucket_counts(batch_status: dict[str, Any]) -> dict[str, int]:
    """
    バッチの集計カウンタを4区分の件数に変換

    Args:
        batch_status: GET batches/{id} のレスポンス

    Returns:
        {"deliverable_count", "undeliverable_count", "risky_count", "unknown_count"}
    """
    def count(key: str) -> int:
        return int(batch_status.get(key) or 0)

    return {
        Verdict.DELIVERABLE.counter_column: count("ok_count"),
        Verdict.UNDELIVERABLE.counter_column: (
            count("failed_syntax_check_count")
            + count("failed_mx_check_count")
            + count("failed_no_mailbox_count")
        ),
        Verdict.RISKY.counter_column: (
            count("ok_for_all_count")
            + count("disposable_count")
            + count("role_count")
        ),
        Verdict.UNKNOWN.counter_column: count("unknown_count"),
    }


def classify_single_result(data: dict[str, Any]) -> Verdict:
    """
    単一メール検証APIのレスポンスを判定に変換

    deliverable → 使い捨て/形式不正/ドメイン不正なら undeliverable
    → キャッチオール/SMTP未確認なら risky → それ以外は unknown
    """
    if data.get("deliverable"):
        return Verdict.DELIVERABLE
    if data.get("disposable") or not data.get("format_valid") or not data.get("domain_valid"):
        return Verdict.UNDELIVERABLE
    if data.get("catch_all") or not data.get("smtp_valid"):
        return Verdict.RISKY
    return Verdict.UNKNOWN


# ====================================
# CSV
# ====================================

def parse_csv_line(line: str, delimiter: str = ",") -> list[str]:
    """
    CSVの1行を分割

    ダブルクォートで囲まれた列は区切り文字を含められ、"" は " 1文字になる。
    各列の前後の空白は除去する。
    """
    rows = list(csv.reader([line], delimiter=delimiter, skipinitialspace=True))
    if not rows:
        return []
    return [field.strip() for field in rows[0]]


def parse_csv(text: str, delimiter: str = ",") -> list[list[str]]:
    """CSVテキスト全体を行のリストに分割（空行は除外）"""
    reader = csv.reader(io.StringIO(text), delimiter=delimiter, skipinitialspace=True)
    return [[field.strip() for field in row] for row in reader if any(f.strip() for f in row)]
