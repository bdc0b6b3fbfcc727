"""
SQLAlchemy models for donor records and import job bookkeeping.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from donor_import.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Donor(Base):
    """A donor record: the target of every import."""
    __tablename__ = "donors"

    id = Column(String(36), primary_key=True, default=_new_id)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False, default="")
    email = Column(String(320), nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(255), nullable=True)
    state = Column(String(100), nullable=True)
    zip_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=True, default="USA")

    donor_type = Column(String(32), nullable=False, default="community")
    student_name = Column(String(255), nullable=True)
    grade_level = Column(String(50), nullable=True)
    alumni_year = Column(String(10), nullable=True)
    graduation_year = Column(String(10), nullable=True)

    engagement_level = Column(String(32), nullable=False, default="new")
    gift_size_tier = Column(String(32), nullable=False, default="grassroots")
    first_donation_date = Column(String(10), nullable=True)
    last_donation_date = Column(String(10), nullable=True)

    email_opt_in = Column(Boolean, default=True)
    phone_opt_in = Column(Boolean, default=False)
    mail_opt_in = Column(Boolean, default=True)
    preferred_contact_method = Column(String(16), default="email")

    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("donors_name_idx", "last_name", "first_name"),
    )


class ImportJob(Base):
    """Durable state of one bulk import run."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)

    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    error_rows = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)

    options = Column(JSON, nullable=False, default=dict)
    field_mappings = Column(JSON, nullable=False, default=list)
    error_summary = Column(JSON, nullable=False, default=list)
    summary = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)

    cancellation_requested = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(Text, nullable=True)

    created_by = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class ImportRowError(Base):
    """Per-row error and warning detail for an import job."""
    __tablename__ = "import_row_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    row_index = Column(Integer, nullable=False)
    action = Column(String(20), nullable=False)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)
    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("import_row_errors_job_idx", "job_id", "row_index"),
    )
