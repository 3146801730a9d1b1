"""
バッチ・ジョブモデル
検索バッチとバッチ内の検索ジョブの状態管理
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


def now_iso() -> str:
    """現在時刻（UTC, ISO8601）"""
    return datetime.now(timezone.utc).isoformat()


class BatchStatus(str, Enum):
    """バッチステータス"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """ジョブステータス"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SearchBatch:
    """検索バッチ（ジョブの集合）"""

    id: str
    name: str
    description: Optional[str] = None
    status: BatchStatus = BatchStatus.PENDING
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    delay_seconds: int = 0
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SearchBatch":
        """ストレージの行から生成"""
        return cls(
            id=row["id"],
            name=row.get("name", ""),
            description=row.get("description"),
            status=BatchStatus(row.get("status") or BatchStatus.PENDING.value),
            total_jobs=row.get("total_jobs") or 0,
            completed_jobs=row.get("completed_jobs") or 0,
            failed_jobs=row.get("failed_jobs") or 0,
            delay_seconds=row.get("delay_seconds") or 0,
            user_id=row.get("user_id"),
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
        )

    @property
    def remaining_jobs(self) -> int:
        """未処理のジョブ数"""
        return max(0, self.total_jobs - self.completed_jobs - self.failed_jobs)

    def to_dict(self) -> dict[str, Any]:
        """辞書に変換"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "total_jobs": self.total_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "delay_seconds": self.delay_seconds,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class SearchJob:
    """検索ジョブ（クエリ＋地域＋ページ数の1単位）"""

    id: str
    batch_id: str
    query: str
    location: Optional[str] = None
    pages: int = 1
    target_names: list[str] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    result_count: Optional[int] = None
    search_id: Optional[str] = None
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    executed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SearchJob":
        """ストレージの行から生成"""
        return cls(
            id=row["id"],
            batch_id=row["batch_id"],
            query=row.get("query", ""),
            location=row.get("location"),
            pages=row.get("pages") or 1,
            target_names=list(row.get("target_names") or []),
            status=JobStatus(row.get("status") or JobStatus.PENDING.value),
            result_count=row.get("result_count"),
            search_id=row.get("search_id"),
            error_message=row.get("error_message"),
            user_id=row.get("user_id"),
            created_at=row.get("created_at"),
            executed_at=row.get("executed_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        """辞書に変換"""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "query": self.query,
            "location": self.location,
            "pages": self.pages,
            "target_names": self.target_names,
            "status": self.status.value,
            "result_count": self.result_count,
            "search_id": self.search_id,
            "error_message": self.error_message,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
        }


# ====================================
# リクエストモデル
# ====================================

class JobInput(BaseModel):
    """バッチ作成時のジョブ1件"""
    query: str
    location: Optional[str] = None
    pages: int = 10
    target_names: list[str] = Field(default_factory=list)


class BatchCreateRequest(BaseModel):
    """バッチ作成リクエスト"""
    name: str
    jobs: list[JobInput]
    description: Optional[str] = None
    delay_seconds: int = 0
    user_id: Optional[str] = None


class ResetJobsRequest(BaseModel):
    """ジョブリセットリクエスト"""
    include_running: bool = False
