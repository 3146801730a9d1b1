"""
メール検証モデル
検証リスト・検証結果・検証キューのデータ構造
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel


class ValidationListStatus(str, Enum):
    """検証リストステータス"""
    UNVALIDATED = "unvalidated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Verdict(str, Enum):
    """正規化された判定（4区分）"""
    DELIVERABLE = "deliverable"
    UNDELIVERABLE = "undeliverable"
    RISKY = "risky"
    UNKNOWN = "unknown"

    @property
    def counter_column(self) -> str:
        """検証リスト上の対応カウンタ列名"""
        return f"{self.value}_count"


class QueueItemStatus(str, Enum):
    """検証キューのステータス（processing はワーカーが取得済みの状態）"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ValidationList:
    """検証リスト"""
    id: str
    name: str
    user_id: Optional[str] = None
    status: ValidationListStatus = ValidationListStatus.UNVALIDATED
    total_emails: int = 0
    processed_emails: int = 0
    deliverable_count: int = 0
    undeliverable_count: int = 0
    risky_count: int = 0
    unknown_count: int = 0
    truelist_batch_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ValidationList":
        """ストレージの行から生成"""
        return cls(
            id=row["id"],
            name=row.get("name", ""),
            user_id=row.get("user_id"),
            status=ValidationListStatus(row.get("status") or ValidationListStatus.UNVALIDATED.value),
            total_emails=row.get("total_emails") or 0,
            processed_emails=row.get("processed_emails") or 0,
            deliverable_count=row.get("deliverable_count") or 0,
            undeliverable_count=row.get("undeliverable_count") or 0,
            risky_count=row.get("risky_count") or 0,
            unknown_count=row.get("unknown_count") or 0,
            truelist_batch_id=row.get("truelist_batch_id"),
            created_at=row.get("created_at"),
        )

    @property
    def classified_count(self) -> int:
        """4区分の合計"""
        return (
            self.deliverable_count
            + self.undeliverable_count
            + self.risky_count
            + self.unknown_count
        )

    def to_dict(self) -> dict[str, Any]:
        """辞書に変換"""
        return {
            "id": self.id,
            "name": self.name,
            "user_id": self.user_id,
            "status": self.status.value,
            "total_emails": self.total_emails,
            "processed_emails": self.processed_emails,
            "deliverable_count": self.deliverable_count,
            "undeliverable_count": self.undeliverable_count,
            "risky_count": self.risky_count,
            "unknown_count": self.unknown_count,
            "truelist_batch_id": self.truelist_batch_id,
            "created_at": self.created_at,
        }


@dataclass
class ValidationResult:
    """メール1件の検証結果（挿入のみ・更新しない）"""
    validation_list_id: str
    email: str
    result: Verdict = Verdict.UNKNOWN
    format_valid: Optional[bool] = None
    domain_valid: Optional[bool] = None
    smtp_valid: Optional[bool] = None
    deliverable: Optional[bool] = None
    catch_all: Optional[bool] = None
    disposable: Optional[bool] = None
    free_email: Optional[bool] = None
    reason: Optional[str] = None
    full_response: Optional[dict] = None

    def to_row(self) -> dict[str, Any]:
        """挿入用の行に変換"""
        return {
            "validation_list_id": self.validation_list_id,
            "email": self.email,
            "result": self.result.value,
            "format_valid": self.format_valid,
            "domain_valid": self.domain_valid,
            "smtp_valid": self.smtp_valid,
            "deliverable": self.deliverable,
            "catch_all": self.catch_all,
            "disposable": self.disposable,
            "free_email": self.free_email,
            "reason": self.reason,
            "full_response": self.full_response,
        }


@dataclass
class ValidationQueueItem:
    """検証キューの1件"""
    id: str
    email: str
    validation_list_id: str
    status: QueueItemStatus = QueueItemStatus.PENDING
    error_message: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ValidationQueueItem":
        """ストレージの行から生成"""
        return cls(
            id=row["id"],
            email=row.get("email", ""),
            validation_list_id=row["validation_list_id"],
            status=QueueItemStatus(row.get("status") or QueueItemStatus.PENDING.value),
            error_message=row.get("error_message"),
            processed_at=row.get("processed_at"),
            created_at=row.get("created_at"),
        )


# ====================================
# リクエスト/レスポンスモデル
# ====================================

class ValidationSubmitRequest(BaseModel):
    """検証バッチ送信リクエスト"""
    emails: list[str]
    list_name: Optional[str] = None
    existing_list_id: Optional[str] = None
    user_id: Optional[str] = None


class ValidationSubmitResponse(BaseModel):
    """検証バッチ送信レスポンス"""
    success: bool
    list_id: str
    truelist_batch_id: Optional[str] = None
    total_emails: int
    message: str


class ReconcileResponse(BaseModel):
    """検証状況レスポンス"""
    status: str
    list_id: str
    batch_state: Optional[str] = None
    total_emails: int = 0
    processed_emails: int = 0
    deliverable_count: int = 0
    undeliverable_count: int = 0
    risky_count: int = 0
    unknown_count: int = 0
    inserted_results: int = 0


class QueueRunResponse(BaseModel):
    """検証キュー処理レスポンス"""
    success: bool
    processed: int
    succeeded: int
    failed: int


class ReconcileRequest(BaseModel):
    """照合リクエスト（batch_id / list_id のどちらも無ければ processing リストを巡回）"""
    batch_id: Optional[str] = None
    list_id: Optional[str] = None
    force: bool = False


class QueueProcessRequest(BaseModel):
    """検証キュー処理リクエスト"""
    batch_size: Optional[int] = None
