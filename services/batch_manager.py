"""
バッチ管理モジュール
検索バッチの作成・開始・一時停止・再開・ジョブの手動リセット
"""

import logging
from typing import Optional

from errors import InvalidRequestError, NotFoundError
from models.job import SearchBatch, SearchJob, BatchStatus, JobStatus, now_iso
from services.storage import Storage, SEARCH_BATCHES, SEARCH_JOBS

logger = logging.getLogger(__name__)


DEFAULT_JOB_PAGES = 10


class BatchManager:
    """バッチマネージャー"""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def create_batch(
        self,
        name: str,
        jobs: list[dict],
        description: Optional[str] = None,
        delay_seconds: int = 0,
        user_id: Optional[str] = None,
    ) -> SearchBatch:
        """
        新しいバッチをジョブ付きで作成

        Args:
            name: バッチ名
            jobs: [{"query", "location", "pages", "target_names"}, ...]（query が空の行は無視）
            description: 説明
            delay_seconds: ジョブ間の待機秒数（実行間隔の目安）
            user_id: 所有ユーザー
        """
        if not name or not name.strip():
            raise InvalidRequestError("Batch name is required")

        valid_jobs = [j for j in jobs if (j.get("query") or "").strip()]
        if not valid_jobs:
            raise InvalidRequestError("No valid jobs provided")

        row = await self.storage.insert(SEARCH_BATCHES, {
            "name": name.strip(),
            "description": description,
            "status": BatchStatus.PENDING.value,
            "total_jobs": len(valid_jobs),
            "completed_jobs": 0,
            "failed_jobs": 0,
            "delay_seconds": max(0, delay_seconds),
            "user_id": user_id,
        })
        batch = SearchBatch.from_row(row)

        await self.storage.insert_many(SEARCH_JOBS, [
            {
                "batch_id": batch.id,
                "query": j["query"].strip(),
                "location": (j.get("location") or "").strip() or None,
                "pages": j.get("pages") or DEFAULT_JOB_PAGES,
                "target_names": j.get("target_names") or [],
                "status": JobStatus.PENDING.value,
                "user_id": user_id,
            }
            for j in valid_jobs
        ])

        logger.info(f"バッチ作成: {batch.id} ({batch.name}, {len(valid_jobs)}ジョブ)")
        return batch

    async def get_batch(self, batch_id: str) -> SearchBatch:
        """バッチを取得"""
        row = await self.storage.get(SEARCH_BATCHES, batch_id)
        if row is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return SearchBatch.from_row(row)

    async def list_jobs(self, batch_id: str) -> list[SearchJob]:
        """バッチのジョブ一覧（作成順）"""
        rows = await self.storage.select(SEARCH_JOBS, {"batch_id": batch_id}, order_by="created_at")
        return [SearchJob.from_row(r) for r in rows]

    async def list_batches(self, user_id: Optional[str] = None, limit: int = 100) -> list[SearchBatch]:
        """バッチ一覧（新しい順）"""
        filters = {"user_id": user_id} if user_id else None
        rows = await self.storage.select(
            SEARCH_BATCHES, filters, order_by="created_at", descending=True, limit=limit,
        )
        return [SearchBatch.from_row(r) for r in rows]

    async def start_batch(self, batch_id: str) -> SearchBatch:
        """バッチを開始（pending → running）"""
        return await self._transition(
            batch_id,
            from_statuses=[BatchStatus.PENDING],
            values={"status": BatchStatus.RUNNING.value, "started_at": now_iso()},
        )

    async def pause_batch(self, batch_id: str) -> SearchBatch:
        """バッチを一時停止（running → paused）"""
        return await self._transition(
            batch_id,
            from_statuses=[BatchStatus.RUNNING],
            values={"status": BatchStatus.PAUSED.value},
        )

    async def resume_batch(self, batch_id: str) -> SearchBatch:
        """バッチを再開（paused → running）"""
        return await self._transition(
            batch_id,
            from_statuses=[BatchStatus.PAUSED],
            values={"status": BatchStatus.RUNNING.value},
        )

    async def reset_jobs(self, batch_id: str, include_running: bool = False) -> int:
        """
        失敗したジョブを pending に戻す（手動リセット）

        include_running=True の場合、クラッシュ等で running のまま残った
        ジョブも戻す。完了済みバッチは変更不可。

        Returns:
            pending に戻したジョブ数
        """
        batch = await self.get_batch(batch_id)
        if batch.status == BatchStatus.COMPLETED:
            raise InvalidRequestError(f"Batch {batch_id} is already completed")

        reset_failed = await self.storage.update(
            SEARCH_JOBS,
            {"batch_id": batch_id, "status": JobStatus.FAILED.value},
            {"status": JobStatus.PENDING.value, "error_message": None, "executed_at": None},
        )
        if reset_failed:
            await self.storage.increment(SEARCH_BATCHES, batch_id, "failed_jobs", -len(reset_failed))

        reset_running = []
        if include_running:
            reset_running = await self.storage.update(
                SEARCH_JOBS,
                {"batch_id": batch_id, "status": JobStatus.RUNNING.value},
                {"status": JobStatus.PENDING.value},
            )

        count = len(reset_failed) + len(reset_running)
        logger.info(f"ジョブリセット: {batch_id} ({count}件)")
        return count

    async def _transition(
        self,
        batch_id: str,
        from_statuses: list[BatchStatus],
        values: dict,
    ) -> SearchBatch:
        batch = await self.get_batch(batch_id)
        if batch.status not in from_statuses:
            raise InvalidRequestError(
                f"Batch {batch_id} is {batch.status.value}, expected "
                f"{' or '.join(s.value for s in from_statuses)}"
            )
        updated = await self.storage.update(
            SEARCH_BATCHES,
            {"id": batch_id, "status": batch.status.value},
            values,
        )
        if not updated:
            raise InvalidRequestError(f"Batch {batch_id} changed concurrently")
        logger.info(f"バッチ状態変更: {batch_id} {batch.status.value} → {updated[0]['status']}")
        return SearchBatch.from_row(updated[0])
