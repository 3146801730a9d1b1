"""
Tests for ValidationQueueWorker and the Mails.so client.
"""

import asyncio

import pytest
import respx
from httpx import Response

from config.settings import Settings
from errors import ConfigurationError, ProviderError, StorageError
from models.validation import QueueItemStatus, ValidationListStatus, Verdict
from services.mails_so import MailsSoClient
from services.storage import InMemoryStorage, VALIDATION_LISTS, VALIDATION_QUEUE, VALIDATION_RESULTS
from services.validation_queue import ValidationQueueWorker
from services.validation_submitter import ValidationBatchSubmitter

DELIVERABLE = {"format_valid": True, "domain_valid": True, "smtp_valid": True, "deliverable": True}
CATCH_ALL = {"format_valid": True, "domain_valid": True, "smtp_valid": True, "catch_all": True}
BAD_DOMAIN = {"format_valid": True, "domain_valid": False}


class FakeMailsSo:
    """メールごとの応答（dict または例外）を返す"""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def validate(self, email):
        self.calls.append(email)
        outcome = self.responses.get(email, DELIVERABLE)
        if isinstance(outcome, Exception):
            raise outcome
        return dict(outcome, email=email)


class FailingCounterStorage(InMemoryStorage):
    """検証リストのカウンタ加算だけ失敗する"""

    async def increment(self, table, row_id, column, amount=1):
        if table == VALIDATION_LISTS:
            raise StorageError("rpc unavailable")
        return await super().increment(table, row_id, column, amount)


def enqueue(storage, emails):
    result = asyncio.run(ValidationBatchSubmitter(storage).enqueue(emails, list_name="Queue"))
    return result.list_id


def list_row(storage, list_id):
    return next(r for r in storage.rows(VALIDATION_LISTS) if r["id"] == list_id)


def queue_by_email(storage):
    return {r["email"]: r for r in storage.rows(VALIDATION_QUEUE)}


@pytest.mark.unit
class TestValidationQueueWorker:

    def test_processes_items_and_isolates_failures(self, storage):
        emails = ["a@acme.io", "b@acme.io", "c@acme.io", "d@acme.io", "e@acme.io"]
        list_id = enqueue(storage, emails)
        mails_so = FakeMailsSo({
            "b@acme.io": CATCH_ALL,
            "c@acme.io": ProviderError("Mails.so API error: 500", status_code=500),
            "d@acme.io": BAD_DOMAIN,
            "e@acme.io": RuntimeError("connection reset"),
        })

        result = asyncio.run(ValidationQueueWorker(storage, mails_so).process_next())

        assert (result.processed, result.succeeded, result.failed) == (5, 3, 2)
        assert result.to_dict()["success"] is True

        queue = queue_by_email(storage)
        assert queue["a@acme.io"]["status"] == QueueItemStatus.COMPLETED.value
        assert queue["c@acme.io"]["status"] == QueueItemStatus.FAILED.value
        assert queue["c@acme.io"]["error_message"] == "Mails.so API error: 500"
        assert queue["e@acme.io"]["error_message"] == "connection reset"
        assert all(r["processed_at"] for r in queue.values())

        results = {r["email"]: r["result"] for r in storage.rows(VALIDATION_RESULTS)}
        assert results == {
            "a@acme.io": Verdict.DELIVERABLE.value,
            "b@acme.io": Verdict.RISKY.value,
            "d@acme.io": Verdict.UNDELIVERABLE.value,
        }

        row = list_row(storage, list_id)
        assert row["processed_emails"] == 3
        assert row["deliverable_count"] == 1
        assert row["risky_count"] == 1
        assert row["undeliverable_count"] == 1
        assert row["unknown_count"] == 0
        assert row["status"] == ValidationListStatus.COMPLETED.value

    def test_nothing_pending(self, storage):
        mails_so = FakeMailsSo({})

        result = asyncio.run(ValidationQueueWorker(storage, mails_so).process_next())

        assert (result.processed, result.succeeded, result.failed) == (0, 0, 0)
        assert mails_so.calls == []

    def test_batch_size_limits_work_and_list_stays_processing(self, storage):
        list_id = enqueue(storage, ["a@acme.io", "b@acme.io", "c@acme.io"])
        worker = ValidationQueueWorker(storage, FakeMailsSo({}))

        first = asyncio.run(worker.process_next(batch_size=2))

        assert first.processed == 2
        assert list_row(storage, list_id)["status"] == ValidationListStatus.PROCESSING.value

        second = asyncio.run(worker.process_next(batch_size=2))

        assert second.processed == 1
        row = list_row(storage, list_id)
        assert row["status"] == ValidationListStatus.COMPLETED.value
        assert row["processed_emails"] == 3

    def test_claimed_items_are_not_taken_again(self, storage):
        list_id = enqueue(storage, ["a@acme.io", "b@acme.io"])
        asyncio.run(storage.update(
            VALIDATION_QUEUE,
            {"email": "a@acme.io"},
            {"status": QueueItemStatus.PROCESSING.value},
        ))
        mails_so = FakeMailsSo({})

        result = asyncio.run(ValidationQueueWorker(storage, mails_so).process_next())

        assert result.processed == 1
        assert mails_so.calls == ["b@acme.io"]
        # 他のワーカーが処理中の行があるのでリストは完了にしない
        assert list_row(storage, list_id)["status"] == ValidationListStatus.PROCESSING.value

    def test_counters_stay_consistent_under_concurrency(self, storage):
        emails = [f"user{i}@acme.io" for i in range(20)]
        list_id = enqueue(storage, emails)

        asyncio.run(ValidationQueueWorker(storage, FakeMailsSo({})).process_next())

        row = list_row(storage, list_id)
        assert row["processed_emails"] == 20
        assert row["deliverable_count"] == 20

    def test_counter_failure_keeps_item_completed(self):
        storage = FailingCounterStorage()
        list_id = enqueue(storage, ["a@acme.io", "b@acme.io"])

        result = asyncio.run(ValidationQueueWorker(storage, FakeMailsSo({})).process_next())

        assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
        assert {r["status"] for r in storage.rows(VALIDATION_QUEUE)} == {QueueItemStatus.COMPLETED.value}
        assert len(storage.rows(VALIDATION_RESULTS)) == result.processed - result.failed
        assert list_row(storage, list_id)["status"] == ValidationListStatus.COMPLETED.value

    def test_from_settings_requires_key(self, storage):
        with pytest.raises(ConfigurationError, match="MAILS_SO_API_KEY"):
            ValidationQueueWorker.from_settings(Settings(), storage)


@pytest.mark.unit
class TestMailsSoClient:

    @respx.mock
    def test_validate_unwraps_data(self):
        route = respx.get(MailsSoClient.API_URL).mock(
            return_value=Response(200, json={"data": {"email": "a@acme.io", "deliverable": True}})
        )

        data = asyncio.run(MailsSoClient("m-key").validate("a@acme.io"))

        assert data == {"email": "a@acme.io", "deliverable": True}
        request = route.calls.last.request
        assert request.headers["x-mails-api-key"] == "m-key"
        assert request.url.params["email"] == "a@acme.io"

    @respx.mock
    def test_validate_http_error(self):
        respx.get(MailsSoClient.API_URL).mock(return_value=Response(401, json={"error": "bad key"}))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(MailsSoClient("m-key").validate("a@acme.io"))
        assert exc_info.value.status_code == 401

    @respx.mock
    def test_validate_unexpected_payload(self):
        respx.get(MailsSoClient.API_URL).mock(return_value=Response(200, json=["nope"]))

        with pytest.raises(ProviderError):
            asyncio.run(MailsSoClient("m-key").validate("a@acme.io"))
