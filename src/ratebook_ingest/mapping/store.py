from datetime import datetime
from typing import Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ..db.models import ProviderMapping
from ..db.session import get_db_session
from ..exceptions import ValidationError
from .column_mapper import OverrideLayer
from .patterns import CANONICAL_FIELDS, IGNORE

logger = structlog.get_logger()


class ProviderMappingStore:
    """Confirmed header mappings, keyed by provider name and editable."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def get(self, provider_name: str) -> Optional[Dict]:
        with get_db_session(self.session_factory) as session:
            record = session.scalar(
                select(ProviderMapping).where(ProviderMapping.provider_name == provider_name.lower())
            )
            if record is None:
                return None
            return self._to_dict(record)

    def layer(self, provider_name: str) -> Optional[OverrideLayer]:
        stored = self.get(provider_name)
        if not stored or not stored["column_mappings"]:
            return None
        return OverrideLayer(source="stored", mappings=dict(stored["column_mappings"]))

    def save(self, provider_name: str, column_mappings: Dict[str, str],
             file_format: Optional[str] = None, user: Optional[str] = None) -> Dict:
        """Create or replace a provider's mapping, bumping its version."""
        unknown = [f for f in column_mappings.values() if f and f != IGNORE and f not in CANONICAL_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown canonical fields: {', '.join(sorted(set(unknown)))}", unknown)

        with get_db_session(self.session_factory) as session:
            record = session.scalar(
                select(ProviderMapping).where(ProviderMapping.provider_name == provider_name.lower())
            )
            if record is None:
                record = ProviderMapping(provider_name=provider_name.lower(), version=1)
                session.add(record)
            else:
                record.version += 1
                record.updated_at = datetime.utcnow()
            record.column_mappings = dict(column_mappings)
            record.file_format = file_format or record.file_format
            record.updated_by = user
            session.flush()
            logger.info("Provider mapping saved",
                        provider_name=record.provider_name,
                        version=record.version,
                        fields=len(column_mappings))
            return self._to_dict(record)

    def delete(self, provider_name: str) -> bool:
        with get_db_session(self.session_factory) as session:
            record = session.scalar(
                select(ProviderMapping).where(ProviderMapping.provider_name == provider_name.lower())
            )
            if record is None:
                return False
            session.delete(record)
            logger.info("Provider mapping deleted", provider_name=provider_name.lower())
            return True

    @staticmethod
    def _to_dict(record: ProviderMapping) -> Dict:
        return {
            "provider_name": record.provider_name,
            "column_mappings": dict(record.column_mappings or {}),
            "file_format": record.file_format,
            "version": record.version,
            "updated_by": record.updated_by,
            "updated_at": record.updated_at,
        }
