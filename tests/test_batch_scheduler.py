"""
Tests for BatchQueueScheduler.

One scheduler pass advances at most one job per running batch.
"""

import asyncio

import pytest

from errors import ProviderError
from models.job import BatchStatus, JobStatus
from models.search import SearchOutcome, Contact
from services.batch_manager import BatchManager
from services.batch_scheduler import BatchQueueScheduler
from services.storage import InMemoryStorage, SEARCH_BATCHES, SEARCH_JOBS


class FakeDispatcher:
    """クエリごとに結果件数（または例外）を返す"""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def search(self, query, location=None, pages=1, target_names=None, user_id=None, **kwargs):
        self.calls.append({
            "query": query,
            "location": location,
            "pages": pages,
            "target_names": target_names,
            "user_id": user_id,
        })
        if query in self.failures:
            raise self.failures[query]
        return SearchOutcome(
            search_id=f"search-{len(self.calls)}",
            contacts=[Contact(email=f"{query}-{i}@acme.io") for i in range(2)],
        )


class ConcurrentClaimStorage(InMemoryStorage):
    """pending ジョブを読んだ直後に別の実行者が取得した状況を再現する"""

    async def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        rows = await super().select(table, filters, order_by, descending, limit)
        if table == SEARCH_JOBS and (filters or {}).get("status") == JobStatus.PENDING.value:
            for row in rows:
                await super().update(SEARCH_JOBS, {"id": row["id"]}, {"status": JobStatus.RUNNING.value})
        return rows


def create_running_batch(storage, name, queries, user_id=None):
    manager = BatchManager(storage)

    async def _create():
        batch = await manager.create_batch(
            name,
            [{"query": q, "location": "Miami", "pages": 2} for q in queries],
            user_id=user_id,
        )
        await manager.start_batch(batch.id)
        return batch.id

    return asyncio.run(_create())


def jobs_of(storage, batch_id):
    return [r for r in storage.rows(SEARCH_JOBS) if r["batch_id"] == batch_id]


def batch_row(storage, batch_id):
    return next(r for r in storage.rows(SEARCH_BATCHES) if r["id"] == batch_id)


@pytest.mark.unit
class TestBatchQueueScheduler:

    def test_no_running_batches(self, storage):
        scheduler = BatchQueueScheduler(storage, FakeDispatcher())

        report = asyncio.run(scheduler.process_queue())

        assert report.steps == []
        assert report.message == "No running batches"

    def test_at_most_one_job_per_batch_per_pass(self, storage):
        first = create_running_batch(storage, "first", ["a1", "a2", "a3"])
        second = create_running_batch(storage, "second", ["b1", "b2"])
        dispatcher = FakeDispatcher()

        report = asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        assert len(report.steps) == 2
        assert [c["query"] for c in dispatcher.calls] == ["a1", "b1"]
        for batch_id in (first, second):
            advanced = [j for j in jobs_of(storage, batch_id) if j["status"] != JobStatus.PENDING.value]
            assert len(advanced) == 1

    def test_job_success_records_result(self, storage):
        batch_id = create_running_batch(storage, "one", ["realtor"])
        dispatcher = FakeDispatcher()

        report = asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        job = jobs_of(storage, batch_id)[0]
        assert job["status"] == JobStatus.COMPLETED.value
        assert job["result_count"] == 2
        assert job["search_id"] == "search-1"
        assert job["executed_at"] is not None
        assert batch_row(storage, batch_id)["completed_jobs"] == 1
        assert report.steps[0].action == BatchQueueScheduler.JOB_COMPLETED
        assert dispatcher.calls[0]["location"] == "Miami"
        assert dispatcher.calls[0]["pages"] == 2

    def test_job_failure_marks_failed_and_counts(self, storage):
        batch_id = create_running_batch(storage, "one", ["broken", "fine"])
        dispatcher = FakeDispatcher(failures={"broken": ProviderError("Serper API error: 500")})

        report = asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        failed = [j for j in jobs_of(storage, batch_id) if j["query"] == "broken"][0]
        assert failed["status"] == JobStatus.FAILED.value
        assert failed["error_message"] == "Serper API error: 500"
        batch = batch_row(storage, batch_id)
        assert batch["failed_jobs"] == 1
        assert batch["completed_jobs"] == 0
        assert batch["status"] == BatchStatus.RUNNING.value
        assert report.steps[0].action == BatchQueueScheduler.JOB_FAILED

    def test_failed_job_is_not_retried(self, storage):
        batch_id = create_running_batch(storage, "one", ["broken"])
        dispatcher = FakeDispatcher(failures={"broken": RuntimeError("boom")})
        scheduler = BatchQueueScheduler(storage, dispatcher)

        asyncio.run(scheduler.process_queue())
        asyncio.run(scheduler.process_queue())

        assert len(dispatcher.calls) == 1
        assert batch_row(storage, batch_id)["status"] == BatchStatus.COMPLETED.value

    def test_counters_never_exceed_total(self, storage):
        batch_id = create_running_batch(storage, "mixed", ["q1", "bad", "q3", "q4"])
        dispatcher = FakeDispatcher(failures={"bad": ProviderError("down")})
        scheduler = BatchQueueScheduler(storage, dispatcher)

        for _ in range(6):
            asyncio.run(scheduler.process_queue())
            batch = batch_row(storage, batch_id)
            assert batch["completed_jobs"] + batch["failed_jobs"] <= batch["total_jobs"]

        batch = batch_row(storage, batch_id)
        assert batch["completed_jobs"] == 3
        assert batch["failed_jobs"] == 1
        assert batch["status"] == BatchStatus.COMPLETED.value

    def test_batch_without_pending_jobs_completes(self, storage):
        batch_id = create_running_batch(storage, "one", ["q1"])
        scheduler = BatchQueueScheduler(storage, FakeDispatcher())

        asyncio.run(scheduler.process_queue())
        report = asyncio.run(scheduler.process_queue())

        batch = batch_row(storage, batch_id)
        assert batch["status"] == BatchStatus.COMPLETED.value
        assert batch["completed_at"] is not None
        assert report.steps[0].action == BatchQueueScheduler.BATCH_COMPLETED

    def test_paused_batch_is_not_advanced(self, storage):
        batch_id = create_running_batch(storage, "one", ["q1"])
        asyncio.run(BatchManager(storage).pause_batch(batch_id))
        dispatcher = FakeDispatcher()

        report = asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        assert report.steps == []
        assert dispatcher.calls == []

    def test_batch_owner_used_when_job_has_no_user(self, storage):
        create_running_batch(storage, "one", ["q1"], user_id="owner-1")
        dispatcher = FakeDispatcher()

        asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        assert dispatcher.calls[0]["user_id"] == "owner-1"

    def test_lost_claim_skips_batch(self):
        storage = ConcurrentClaimStorage()
        batch_id = create_running_batch(storage, "one", ["q1"])
        dispatcher = FakeDispatcher()

        report = asyncio.run(BatchQueueScheduler(storage, dispatcher).process_queue())

        assert report.steps[0].action == BatchQueueScheduler.CLAIM_LOST
        assert dispatcher.calls == []
        batch = batch_row(storage, batch_id)
        assert batch["completed_jobs"] == 0
        assert batch["failed_jobs"] == 0
