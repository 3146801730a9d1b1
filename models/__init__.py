from .job import SearchBatch, SearchJob, BatchStatus, JobStatus, JobInput, BatchCreateRequest, ResetJobsRequest
from .search import SearchRequest, SearchResponse, SearchSession, Contact, SearchOutcome
from .validation import (
    ValidationList,
    ValidationListStatus,
    ValidationResult,
    ValidationQueueItem,
    QueueItemStatus,
    Verdict,
    ValidationSubmitRequest,
    ValidationSubmitResponse,
    ReconcileRequest,
    ReconcileResponse,
    QueueProcessRequest,
    QueueRunResponse,
)

__all__ = [
    "SearchBatch",
    "SearchJob",
    "BatchStatus",
    "JobStatus",
    "JobInput",
    "BatchCreateRequest",
    "ResetJobsRequest",
    "SearchRequest",
    "SearchResponse",
    "SearchSession",
    "Contact",
    "SearchOutcome",
    "ValidationList",
    "ValidationListStatus",
    "ValidationResult",
    "ValidationQueueItem",
    "QueueItemStatus",
    "Verdict",
    "ValidationSubmitRequest",
    "ValidationSubmitResponse",
    "ReconcileRequest",
    "ReconcileResponse",
    "QueueProcessRequest",
    "QueueRunResponse",
]
