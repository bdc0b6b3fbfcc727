"""
Donor record store used by duplicate detection and by import batches.

Every batch is applied as one transaction: either all of its creates and
updates commit, or none do.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol
import logging
import uuid

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from donor_import.db.models import Donor
from donor_import.db.session import get_session_local
from donor_import.domain.imports.duplicates import ExistingRecord
from donor_import.domain.imports.errors import RecordStoreError
from donor_import.domain.imports.target_schema import RECORD_FIELDS, record_defaults

logger = logging.getLogger(__name__)

FORMULA_PREFIXES = ("=", "+", "-", "@")
_UNSANITIZED_FIELDS = {"email", "phone"}


def sanitize_value(field_name: str, value: Any) -> Any:
    """Neutralize spreadsheet formula injection in free-text values."""
    if (
        isinstance(value, str)
        and field_name not in _UNSANITIZED_FIELDS
        and value.startswith(FORMULA_PREFIXES)
    ):
        return "'" + value
    return value


def prepare_record(data: Dict[str, Any], apply_defaults: bool) -> Dict[str, Any]:
    """Restrict cleaned data to stored donor columns, apply defaults and sanitize."""
    prepared: Dict[str, Any] = {}
    if apply_defaults:
        prepared.update(record_defaults())
    for field_name in RECORD_FIELDS:
        value = data.get(field_name)
        if value is None or value == "":
            continue
        prepared[field_name] = sanitize_value(field_name, value)
    if apply_defaults:
        prepared.setdefault("first_name", "")
        prepared.setdefault("last_name", "")
    return prepared


class RecordBatch(Protocol):
    def create_record(self, data: Dict[str, Any], record_id: Optional[str] = None) -> str:
        ...

    def update_record(self, record_id: str, data: Dict[str, Any]) -> None:
        ...


class RecordStore(Protocol):
    def find_candidates(
        self,
        email: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> List[ExistingRecord]:
        ...

    def batch(self):
        """Context manager yielding a ``RecordBatch`` that commits atomically on exit."""
        ...


class _SqlRecordBatch:
    def __init__(self, session):
        self.session = session
        self.created = 0
        self.updated = 0
        self._pending: Dict[str, Donor] = {}

    def create_record(self, data: Dict[str, Any], record_id: Optional[str] = None) -> str:
        donor = Donor(id=record_id or str(uuid.uuid4()), **prepare_record(data, apply_defaults=True))
        self.session.add(donor)
        self._pending[donor.id] = donor
        self.created += 1
        return donor.id

    def update_record(self, record_id: str, data: Dict[str, Any]) -> None:
        # Rows may update a donor created earlier in the same batch.
        donor = self._pending.get(record_id) or self.session.get(Donor, record_id)
        if donor is None or not donor.is_active:
            raise RecordStoreError(f"Donor '{record_id}' no longer exists")
        for field_name, value in prepare_record(data, apply_defaults=False).items():
            setattr(donor, field_name, value)
        self.updated += 1


class SqlRecordStore:
    """Record store backed by the ``donors`` table."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        factory = self._session_factory or get_session_local()
        return factory()

    def find_candidates(
        self,
        email: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> List[ExistingRecord]:
        clauses = []
        if email:
            clauses.append(func.lower(Donor.email) == email.strip().lower())
        if first_name and last_name:
            clauses.append(
                and_(
                    func.lower(Donor.first_name) == first_name.strip().lower(),
                    func.lower(Donor.last_name) == last_name.strip().lower(),
                )
            )
        if not clauses:
            return []

        session = self._session()
        try:
            donors = (
                session.query(Donor)
                .filter(Donor.is_active.is_(True), or_(*clauses))
                .order_by(Donor.created_at)
                .all()
            )
            return [
                ExistingRecord(
                    id=donor.id,
                    first_name=donor.first_name or "",
                    last_name=donor.last_name or "",
                    email=donor.email,
                    city=donor.city,
                    student_name=donor.student_name,
                )
                for donor in donors
            ]
        except SQLAlchemyError as exc:
            logger.exception("Failed to look up duplicate candidates")
            raise RecordStoreError(f"Could not read donor records: {exc}") from exc
        finally:
            session.close()

    @contextmanager
    def batch(self) -> Iterator[_SqlRecordBatch]:
        session = self._session()
        record_batch = _SqlRecordBatch(session)
        try:
            yield record_batch
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Donor batch rolled back")
            raise RecordStoreError(f"Could not commit donor batch: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
        logger.debug(
            "Committed donor batch: %d created, %d updated", record_batch.created, record_batch.updated
        )
