from .storage import Storage, InMemoryStorage, SupabaseStorage
from .serper import SerperClient, build_search_query
from .truelist import TruelistClient
from .mails_so import MailsSoClient
from .contact_extractor import ContactExtractor
from .search_dispatcher import SearchDispatcher
from .batch_scheduler import BatchQueueScheduler
from .batch_manager import BatchManager
from .validation_submitter import ValidationBatchSubmitter
from .validation_reconciler import ValidationBatchReconciler
from .validation_queue import ValidationQueueWorker

__all__ = [
    "Storage",
    "InMemoryStorage",
    "SupabaseStorage",
    "SerperClient",
    "build_search_query",
    "TruelistClient",
    "MailsSoClient",
    "ContactExtractor",
    "SearchDispatcher",
    "BatchQueueScheduler",
    "BatchManager",
    "ValidationBatchSubmitter",
    "ValidationBatchReconciler",
    "ValidationQueueWorker",
]
