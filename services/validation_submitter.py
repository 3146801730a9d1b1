"""
検証バッチ送信モジュール
メールアドレス一覧を検証リストとして登録し、外部検証サービスにバッチとして送信する
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from config.settings import Settings
from errors import InvalidRequestError, NotFoundError, PipelineError, ProviderError
from models.job import now_iso
from models.validation import ValidationListStatus, QueueItemStatus
from services.storage import Storage, VALIDATION_LISTS, VALIDATION_QUEUE
from services.truelist import TruelistClient

logger = logging.getLogger(__name__)


MARKER_DOMAIN = "marker.internal"


def normalize_emails(emails: Iterable[str]) -> list[str]:
    """前後の空白除去・小文字化・重複除去（順序は維持）"""
    normalized = []
    seen = set()
    for email in emails:
        value = (email or "").strip().lower()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def make_marker_email() -> str:
    """
    バッチ先頭に入れる目印アドレス

    検証サービスは内容のハッシュで重複アップロードを弾くため、
    同じアドレス集合を再送信しても毎回別のバッチになるようにする。
    """
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}@{MARKER_DOMAIN}"


def make_batch_filename() -> str:
    """一意なアップロードファイル名"""
    return f"batch_{uuid.uuid4().hex[:8]}_{int(time.time() * 1000)}.json"


@dataclass
class SubmissionResult:
    """送信結果"""
    list_id: str
    batch_id: Optional[str]
    total_emails: int

    def to_dict(self) -> dict:
        return {
            "list_id": self.list_id,
            "batch_id": self.batch_id,
            "total_emails": self.total_emails,
        }


class ValidationBatchSubmitter:
    """検証バッチ送信"""

    def __init__(
        self,
        storage: Storage,
        truelist_client: Optional[TruelistClient] = None,
        webhook_url: Optional[str] = None,
    ):
        self.storage = storage
        self.truelist = truelist_client
        self.webhook_url = webhook_url or None

    @classmethod
    def from_settings(cls, settings: Settings, storage: Storage) -> "ValidationBatchSubmitter":
        """設定から生成（TRUELIST_API_KEY が無ければ即エラー）"""
        settings.require("TRUELIST_API_KEY")
        return cls(
            storage=storage,
            truelist_client=TruelistClient(settings.truelist_api_key, timeout=settings.http_timeout),
            webhook_url=settings.truelist_webhook_url,
        )

    async def _prepare_list(
        self,
        total: int,
        list_name: Optional[str],
        existing_list_id: Optional[str],
        user_id: Optional[str],
    ) -> str:
        """検証リストを作成、または既存リストのカウンタをリセット"""
        fresh = {
            "status": ValidationListStatus.PROCESSING.value,
            "total_emails": total,
            "processed_emails": 0,
            "deliverable_count": 0,
            "undeliverable_count": 0,
            "risky_count": 0,
            "unknown_count": 0,
        }

        if existing_list_id:
            updated = await self.storage.update(VALIDATION_LISTS, {"id": existing_list_id}, fresh)
            if not updated:
                raise NotFoundError(f"Validation list {existing_list_id} not found")
            logger.info(f"既存の検証リストをリセット: {existing_list_id}")
            return existing_list_id

        row = await self.storage.insert(VALIDATION_LISTS, {
            "name": list_name or f"Validation {now_iso()}",
            "user_id": user_id,
            **fresh,
        })
        logger.info(f"検証リスト作成: {row['id']}")
        return row["id"]

    async def submit(
        self,
        emails: Iterable[str],
        list_name: Optional[str] = None,
        existing_list_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SubmissionResult:
        """
        メールアドレスをバッチ検証に送信

        Args:
            emails: メールアドレス（前後空白除去・小文字化して送信）
            list_name: 新規リスト名
            existing_list_id: 既存リストID（指定時はカウンタをリセットして再利用）
            user_id: 所有ユーザー

        Returns:
            SubmissionResult（ポーリング用のリストIDと外部バッチID）

        Raises:
            ProviderError: 外部サービスでのバッチ作成に失敗（リストは failed になる）
        """
        if self.truelist is None:
            raise PipelineError("Truelist client is not configured")

        addresses = normalize_emails(emails)
        if not addresses:
            raise InvalidRequestError("No emails provided")

        list_id = await self._prepare_list(len(addresses), list_name, existing_list_id, user_id)

        filename = make_batch_filename()
        payload = [make_marker_email(), *addresses]

        try:
            batch = await self.truelist.create_batch(payload, filename, webhook_url=self.webhook_url)
        except ProviderError:
            logger.error(f"検証バッチ作成失敗: リスト {list_id} を failed に変更")
            await self.storage.update(
                VALIDATION_LISTS,
                {"id": list_id},
                {"status": ValidationListStatus.FAILED.value},
            )
            raise

        batch_id = batch.get("id")
        await self.storage.update(VALIDATION_LISTS, {"id": list_id}, {"truelist_batch_id": batch_id})

        logger.info(f"検証バッチ作成: {batch_id} (state={batch.get('batch_state')}, {len(addresses)}件)")
        return SubmissionResult(list_id=list_id, batch_id=batch_id, total_emails=len(addresses))

    async def enqueue(
        self,
        emails: Iterable[str],
        list_name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SubmissionResult:
        """
        1件ずつ検証するキューに登録（外部バッチは作成しない）

        検証リストを作成し、メールごとに pending のキュー行を追加する。
        実際の検証は ValidationQueueWorker が行う。
        """
        addresses = normalize_emails(emails)
        if not addresses:
            raise InvalidRequestError("No emails provided")

        list_id = await self._prepare_list(len(addresses), list_name, None, user_id)
        await self.storage.insert_many(VALIDATION_QUEUE, [
            {
                "email": address,
                "validation_list_id": list_id,
                "status": QueueItemStatus.PENDING.value,
            }
            for address in addresses
        ])

        logger.info(f"検証キュー登録: リスト {list_id} ({len(addresses)}件)")
        return SubmissionResult(list_id=list_id, batch_id=None, total_emails=len(addresses))
