"""
バッチキュー処理モジュール
running 状態のバッチごとに pending ジョブを1件だけ進める

呼び出し1回につきバッチあたり最大1ジョブ。ジョブ間の待機（delay_seconds）は
このモジュールでは行わず、呼び出し側の実行間隔（cron / worker.py）で実現する。
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from errors import StorageError
from models.job import SearchBatch, SearchJob, BatchStatus, JobStatus, now_iso
from services.search_dispatcher import SearchDispatcher
from services.storage import Storage, SEARCH_BATCHES, SEARCH_JOBS

logger = logging.getLogger(__name__)


@dataclass
class BatchStep:
    """バッチ1件分の処理結果"""
    batch_id: str
    action: str
    job_id: Optional[str] = None
    result_count: int = 0
    search_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "action": self.action,
            "job_id": self.job_id,
            "result_count": self.result_count,
            "search_id": self.search_id,
            "error": self.error,
        }


@dataclass
class SchedulerReport:
    """キュー処理1回分の結果"""
    steps: list[BatchStep] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.steps:
            return "No running batches"
        return "Queue processed successfully"

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "batches": len(self.steps),
            "steps": [s.to_dict() for s in self.steps],
        }


class BatchQueueScheduler:
    """バッチキュースケジューラ"""

    # BatchStep.action の値
    BATCH_COMPLETED = "batch_completed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    CLAIM_LOST = "claim_lost"
    LOOKUP_FAILED = "lookup_failed"

    def __init__(self, storage: Storage, dispatcher: SearchDispatcher):
        self.storage = storage
        self.dispatcher = dispatcher

    async def process_queue(self) -> SchedulerReport:
        """
        running のバッチを作成順に処理する

        バッチ間は逐次処理（並列にしない）。1回の呼び出しで発生する
        外部検索はバッチあたり最大1ジョブ分。
        """
        report = SchedulerReport()

        rows = await self.storage.select(
            SEARCH_BATCHES,
            {"status": BatchStatus.RUNNING.value},
            order_by="created_at",
        )
        if not rows:
            logger.info("running のバッチなし")
            return report

        logger.info(f"キュー処理開始: running バッチ{len(rows)}件")

        for row in rows:
            batch = SearchBatch.from_row(row)
            step = await self._advance_batch(batch)
            report.steps.append(step)

        logger.info(f"キュー処理完了: {len(report.steps)}バッチ")
        return report

    async def _advance_batch(self, batch: SearchBatch) -> BatchStep:
        """バッチのジョブを1件進める"""
        logger.info(f"バッチ処理: {batch.id} - {batch.name}")

        try:
            jobs = await self.storage.select(
                SEARCH_JOBS,
                {"batch_id": batch.id, "status": JobStatus.PENDING.value},
                order_by="created_at",
                limit=1,
            )
        except StorageError as e:
            logger.error(f"ジョブ取得エラー: {batch.id} - {e}")
            return BatchStep(batch.id, self.LOOKUP_FAILED, error=str(e))

        if not jobs:
            # pending がなければバッチ完了（途中で pause された場合は触らない）
            await self.storage.update(
                SEARCH_BATCHES,
                {"id": batch.id, "status": BatchStatus.RUNNING.value},
                {"status": BatchStatus.COMPLETED.value, "completed_at": now_iso()},
            )
            logger.info(f"バッチ完了: {batch.id}")
            return BatchStep(batch.id, self.BATCH_COMPLETED)

        job = SearchJob.from_row(jobs[0])

        # pending のままの場合だけ running にする（compare-and-swap）
        claimed = await self.storage.update(
            SEARCH_JOBS,
            {"id": job.id, "status": JobStatus.PENDING.value},
            {"status": JobStatus.RUNNING.value},
        )
        if not claimed:
            logger.info(f"ジョブは他の実行で取得済み: {job.id}")
            return BatchStep(batch.id, self.CLAIM_LOST, job_id=job.id)

        logger.info(f"ジョブ実行: {job.id} - {job.query}")

        try:
            outcome = await self.dispatcher.search(
                query=job.query,
                location=job.location,
                pages=job.pages,
                target_names=job.target_names,
                user_id=job.user_id or batch.user_id,
            )
        except Exception as e:
            logger.exception(f"ジョブ失敗: {job.id} - {e}")
            error_message = str(e) or type(e).__name__
            await self.storage.update(
                SEARCH_JOBS,
                {"id": job.id},
                {
                    "status": JobStatus.FAILED.value,
                    "executed_at": now_iso(),
                    "error_message": error_message,
                },
            )
            await self.storage.increment(SEARCH_BATCHES, batch.id, "failed_jobs")
            return BatchStep(batch.id, self.JOB_FAILED, job_id=job.id, error=error_message)

        await self.storage.update(
            SEARCH_JOBS,
            {"id": job.id},
            {
                "status": JobStatus.COMPLETED.value,
                "executed_at": now_iso(),
                "result_count": outcome.result_count,
                "search_id": outcome.search_id,
            },
        )
        await self.storage.increment(SEARCH_BATCHES, batch.id, "completed_jobs")

        logger.info(f"ジョブ完了: {job.id} ({outcome.result_count}件)")
        return BatchStep(
            batch.id,
            self.JOB_COMPLETED,
            job_id=job.id,
            result_count=outcome.result_count,
            search_id=outcome.search_id,
        )
