import logging
import sys
from typing import List, Optional
import structlog

from ..config.settings import get_settings


def setup_logging() -> None:
    """Setup structured logging configuration."""
    settings = get_settings()

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper())
    )

    # Configure structlog
    if settings.log_format.lower() == "json":
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer()
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class ImportLogger:
    """Logger for ratebook import batches."""

    def __init__(self):
        self.logger = structlog.get_logger()

    def log_import_start(self,
                         batch_id: str,
                         provider_code: str,
                         contract_type: str,
                         file_name: str,
                         row_count: int) -> None:
        """Log start of an import batch."""
        self.logger.info(
            "Ratebook import started",
            batch_id=batch_id,
            provider_code=provider_code,
            contract_type=contract_type,
            file_name=file_name,
            row_count=row_count
        )

    def log_chunk_result(self,
                         batch_id: str,
                         chunk_index: int,
                         chunk_size: int,
                         inserted: int,
                         attempts: int,
                         error: Optional[str] = None) -> None:
        """Log the outcome of one persisted chunk."""
        if error:
            self.logger.warning(
                "Chunk insert failed",
                batch_id=batch_id,
                chunk_index=chunk_index,
                chunk_size=chunk_size,
                attempts=attempts,
                error=error
            )
            return
        self.logger.debug(
            "Chunk inserted",
            batch_id=batch_id,
            chunk_index=chunk_index,
            chunk_size=chunk_size,
            inserted=inserted,
            attempts=attempts
        )

    def log_import_finalized(self,
                             batch_id: str,
                             status: str,
                             total_rows: int,
                             success_rows: int,
                             error_rows: int,
                             unique_cap_codes: int) -> None:
        """Log final batch status."""
        self.logger.info(
            "Ratebook import finalized",
            batch_id=batch_id,
            status=status,
            total_rows=total_rows,
            success_rows=success_rows,
            error_rows=error_rows,
            unique_cap_codes=unique_cap_codes,
            success_rate=success_rows / total_rows if total_rows > 0 else 0
        )

    def log_import_aborted(self, batch_id: str, reason: str) -> None:
        """Log an aborted import."""
        self.logger.warning("Ratebook import aborted", batch_id=batch_id, reason=reason)

    def log_sheets(self, file_name: str, processed: List[str], skipped: List[str]) -> None:
        self.logger.info(
            "Workbook sheets classified",
            file_name=file_name,
            sheets_processed=processed,
            sheets_skipped=skipped
        )


class MatchingLogger:
    """Logger for vehicle matching operations."""

    def __init__(self):
        self.logger = structlog.get_logger()

    def log_match_result(self,
                         descriptor: str,
                         cap_code: Optional[str],
                         confidence: int,
                         method: str,
                         candidates_evaluated: int) -> None:
        """Log matching result."""
        self.logger.debug(
            "Vehicle matching completed",
            descriptor=descriptor[:100] + "..." if len(descriptor) > 100 else descriptor,
            cap_code=cap_code,
            confidence=confidence,
            match_method=method,
            candidates_evaluated=candidates_evaluated
        )

    def log_status_change(self,
                          match_id: int,
                          from_status: str,
                          to_status: str,
                          user: Optional[str] = None) -> None:
        """Log a human workflow transition."""
        self.logger.info(
            "Vehicle match status changed",
            match_id=match_id,
            from_status=from_status,
            to_status=to_status,
            user=user
        )

    def log_batch_result(self,
                         provider_code: str,
                         keys: int,
                         matched: int,
                         reused: int) -> None:
        """Log batched match resolution for one chunk."""
        self.logger.debug(
            "Chunk vehicle keys resolved",
            provider_code=provider_code,
            keys=keys,
            matched=matched,
            reused=reused
        )


# Global logger instances
import_logger = ImportLogger()
matching_logger = MatchingLogger()
