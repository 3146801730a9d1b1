"""
検索モデル
検索リクエスト・結果のデータ構造
"""

from dataclasses import dataclass, field
from typing import Optional, Any
from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """検索リクエスト（APIエンドポイント用）"""
    query: str
    location: Optional[str] = None
    pages: int = 1
    target_names: list[str] = Field(default_factory=list)
    email_providers: list[str] = Field(default_factory=list)
    websites: list[str] = Field(default_factory=list)
    user_id: Optional[str] = None


class SearchResponse(BaseModel):
    """検索レスポンス"""
    search_id: Optional[str] = None
    result_count: int
    contacts: list[dict]


@dataclass
class SearchSession:
    """検索セッション（検索1回につき1行）"""
    id: str
    query: str
    location: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SearchSession":
        """ストレージの行から生成"""
        return cls(
            id=row["id"],
            query=row.get("query", ""),
            location=row.get("location"),
            user_id=row.get("user_id"),
            created_at=row.get("created_at"),
        )


@dataclass
class Contact:
    """抽出された連絡先"""
    email: str
    search_id: Optional[str] = None
    name: Optional[str] = None
    organization: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    social_links: Optional[dict] = None
    id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Contact":
        """ストレージの行から生成"""
        return cls(
            id=row.get("id"),
            search_id=row.get("search_id"),
            email=row.get("email", ""),
            name=row.get("name"),
            organization=row.get("organization"),
            phone=row.get("phone"),
            website=row.get("website"),
            social_links=row.get("social_links"),
        )

    def to_row(self) -> dict[str, Any]:
        """挿入用の行に変換（idはストレージが採番）"""
        return {
            "search_id": self.search_id,
            "email": self.email,
            "name": self.name,
            "organization": self.organization,
            "phone": self.phone,
            "website": self.website,
            "social_links": self.social_links,
        }

    def to_dict(self) -> dict[str, Any]:
        """辞書に変換"""
        return {"id": self.id, **self.to_row()}


@dataclass
class SearchOutcome:
    """検索結果（セッションIDと新規連絡先）"""
    search_id: Optional[str]
    contacts: list[Contact] = field(default_factory=list)
    pages_fetched: int = 0
    pages_failed: int = 0

    @property
    def result_count(self) -> int:
        return len(self.contacts)

    def to_dict(self) -> dict:
        """辞書に変換"""
        return {
            "search_id": self.search_id,
            "result_count": self.result_count,
            "contacts": [c.to_dict() for c in self.contacts],
        }
