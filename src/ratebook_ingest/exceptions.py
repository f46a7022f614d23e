"""Error taxonomy for ratebook ingestion.

Pre-flight errors (DuplicateFileError, ValidationError) propagate out of an
import call. RowParseError and ChunkPersistError are collected into the batch
error log and never escape the import.
"""

from datetime import datetime
from typing import List, Optional


class RatebookIngestError(Exception):
    """Base class for all ingestion errors."""


class DuplicateFileError(RatebookIngestError):
    def __init__(self, batch_id: str, created_at: datetime, file_hash: str):
        self.batch_id = batch_id
        self.created_at = created_at
        self.file_hash = file_hash
        super().__init__(
            f"Duplicate file - already imported on {created_at.isoformat()} (batch {batch_id})"
        )


class ValidationError(RatebookIngestError):
    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = problems or []
        super().__init__(message)


class RowParseError(RatebookIngestError):
    def __init__(self, sheet: str, row_index: int, reason: str):
        self.sheet = sheet
        self.row_index = row_index
        self.reason = reason
        super().__init__(f"{sheet} row {row_index + 1}: {reason}")


class ChunkPersistError(RatebookIngestError):
    def __init__(self, chunk_index: int, size: int, cause: str):
        self.chunk_index = chunk_index
        self.size = size
        self.cause = cause
        super().__init__(f"Chunk {chunk_index} ({size} rows) failed: {cause}")


class BatchNotFound(RatebookIngestError):
    pass


class ImportAborted(RatebookIngestError):
    pass


class MatchNotFound(RatebookIngestError):
    pass


class UnknownCapCode(RatebookIngestError):
    pass


class InvalidMatchTransition(RatebookIngestError):
    def __init__(self, match_id: int, from_status: str, action: str):
        self.match_id = match_id
        self.from_status = from_status
        self.action = action
        super().__init__(f"Cannot {action} match {match_id} in status '{from_status}'")


class JobNotFound(RatebookIngestError):
    pass


class InvalidJobTransition(RatebookIngestError):
    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Import job {job_id} cannot move from '{from_status}' to '{to_status}'")
