"""
検証キュー処理モジュール
pending のキュー行を取得し、単一メール検証APIで並列に検証する
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from config.settings import Settings
from errors import StorageError
from models.job import now_iso
from models.validation import (
    QueueItemStatus,
    ValidationListStatus,
    ValidationQueueItem,
    ValidationResult,
)
from services.mails_so import MailsSoClient
from services.storage import Storage, VALIDATION_LISTS, VALIDATION_QUEUE, VALIDATION_RESULTS
from services.verdicts import classify_single_result

logger = logging.getLogger(__name__)


@dataclass
class QueueRunResult:
    """キュー処理1回分の件数"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class ValidationQueueWorker:
    """検証キューワーカー"""

    def __init__(self, storage: Storage, mails_so_client: MailsSoClient):
        self.storage = storage
        self.mails_so = mails_so_client

    @classmethod
    def from_settings(cls, settings: Settings, storage: Storage) -> "ValidationQueueWorker":
        """設定から生成（MAILS_SO_API_KEY が無ければ即エラー）"""
        settings.require("MAILS_SO_API_KEY")
        return cls(storage, MailsSoClient(settings.mails_so_api_key, timeout=settings.http_timeout))

    async def process_next(self, batch_size: int = 200) -> QueueRunResult:
        """
        pending のキュー行を古い順に最大 batch_size 件処理する

        取得した行は pending → processing の条件付き更新で確保してから検証する
        （並行実行された別のワーカーと同じ行を処理しない）。
        各行は独立して成功/失敗し、1件の失敗が他の行に影響しない。

        Returns:
            QueueRunResult（pending がなければ全て0）
        """
        rows = await self.storage.select(
            VALIDATION_QUEUE,
            {"status": QueueItemStatus.PENDING.value},
            order_by="created_at",
            limit=batch_size,
        )
        if not rows:
            logger.info("pending の検証キューなし")
            return QueueRunResult()

        claimed = await self.storage.update(
            VALIDATION_QUEUE,
            {"id": [r["id"] for r in rows], "status": QueueItemStatus.PENDING.value},
            {"status": QueueItemStatus.PROCESSING.value},
        )
        if not claimed:
            logger.info("他のワーカーが取得済み")
            return QueueRunResult()

        items = [ValidationQueueItem.from_row(r) for r in claimed]
        logger.info(f"検証開始: {len(items)}件（並列）")

        outcomes = await asyncio.gather(
            *(self._process_item(item) for item in items),
            return_exceptions=True,
        )
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"失敗状態を保存できません: {item.id} - {outcome}")

        result = QueueRunResult(processed=len(items))
        result.succeeded = sum(1 for ok in outcomes if ok is True)
        result.failed = result.processed - result.succeeded

        await self._complete_lists({item.validation_list_id for item in items})

        logger.info(f"検証完了: 成功{result.succeeded}件 / 失敗{result.failed}件")
        return result

    async def _process_item(self, item: ValidationQueueItem) -> bool:
        """1件を検証して保存（例外は外に出さない）"""
        try:
            data = await self.mails_so.validate(item.email)
            verdict = classify_single_result(data)

            await self.storage.insert(VALIDATION_RESULTS, ValidationResult(
                validation_list_id=item.validation_list_id,
                email=item.email,
                result=verdict,
                format_valid=data.get("format_valid"),
                domain_valid=data.get("domain_valid"),
                smtp_valid=data.get("smtp_valid"),
                deliverable=data.get("deliverable"),
                catch_all=data.get("catch_all"),
                disposable=data.get("disposable"),
                free_email=data.get("free_email"),
                reason=data.get("reason"),
                full_response=data,
            ).to_row())

            await self.storage.update(
                VALIDATION_QUEUE,
                {"id": item.id},
                {"status": QueueItemStatus.COMPLETED.value, "processed_at": now_iso()},
            )

        except Exception as e:
            logger.warning(f"検証失敗: {item.email} - {e}")
            await self.storage.update(
                VALIDATION_QUEUE,
                {"id": item.id},
                {
                    "status": QueueItemStatus.FAILED.value,
                    "error_message": str(e) or type(e).__name__,
                    "processed_at": now_iso(),
                },
            )
            return False

        # 結果行は保存済みのため、カウンタ更新の失敗は記録のみで成功扱い
        try:
            await self.storage.increment(VALIDATION_LISTS, item.validation_list_id, verdict.counter_column)
            await self.storage.increment(VALIDATION_LISTS, item.validation_list_id, "processed_emails")
        except StorageError as e:
            logger.error(f"カウンタ更新失敗: {item.validation_list_id} ({item.email}) - {e}")

        logger.debug(f"検証済み: {item.email} → {verdict.value}")
        return True

    async def _complete_lists(self, list_ids: set[str]) -> None:
        """未処理の行が残っていないリストを完了にする"""
        for list_id in list_ids:
            remaining = await self.storage.count(
                VALIDATION_QUEUE,
                {
                    "validation_list_id": list_id,
                    "status": [QueueItemStatus.PENDING.value, QueueItemStatus.PROCESSING.value],
                },
            )
            if remaining:
                continue
            updated = await self.storage.update(
                VALIDATION_LISTS,
                {"id": list_id, "status": ValidationListStatus.PROCESSING.value},
                {"status": ValidationListStatus.COMPLETED.value},
            )
            if updated:
                logger.info(f"検証リスト完了: {list_id}")
