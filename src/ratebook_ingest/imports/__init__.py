from .batch_manager import ImportBatchManager, hash_content, make_batch_id
from .importer import RatebookImporter, ImportResult
from .queue import ImportQueue, ImportWorker

__all__ = [
    "ImportBatchManager",
    "hash_content",
    "make_batch_id",
    "RatebookImporter",
    "ImportResult",
    "ImportQueue",
    "ImportWorker",
]
