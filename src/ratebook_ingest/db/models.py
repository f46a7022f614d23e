import enum
from datetime import datetime
from sqlalchemy import (
    String, Integer, DateTime, ForeignKey, JSON, Float, Text, LargeBinary,
    Enum, Boolean, Index, CheckConstraint
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from .base import Base

# --- enums ---
class ImportStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class MatchStatus(str, enum.Enum):
    PENDING = "pending"      # machine suggested
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    MANUAL = "manual"

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

# --- canonical catalog ---
class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cap_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    cap_id: Mapped[str | None] = mapped_column(String, nullable=True)
    manufacturer: Mapped[str] = mapped_column(String, index=True)
    model: Mapped[str] = mapped_column(String)
    variant: Mapped[str | None] = mapped_column(String, nullable=True)
    model_year: Mapped[str | None] = mapped_column(String, nullable=True)
    p11d: Mapped[int | None] = mapped_column(Integer, nullable=True)  # pence
    otr: Mapped[int | None] = mapped_column(Integer, nullable=True)   # pence
    fuel_type: Mapped[str | None] = mapped_column(String, nullable=True)
    transmission: Mapped[str | None] = mapped_column(String, nullable=True)
    body_style: Mapped[str | None] = mapped_column(String, nullable=True)
    co2: Mapped[int | None] = mapped_column(Integer, nullable=True)
    insurance_group: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

# --- versioned imports ---
class RatebookImport(Base):
    __tablename__ = "ratebook_imports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    provider_code: Mapped[str] = mapped_column(String, nullable=False)
    contract_type: Mapped[str] = mapped_column(String, nullable=False)
    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    file_hash: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[ImportStatus] = mapped_column(Enum(ImportStatus), default=ImportStatus.PROCESSING, nullable=False)
    is_latest: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    success_rows: Mapped[int] = mapped_column(Integer, default=0)
    error_rows: Mapped[int] = mapped_column(Integer, default=0)
    unique_cap_codes: Mapped[int] = mapped_column(Integer, default=0)
    error_log: Mapped[list] = mapped_column(JSON, default=list)
    details: Mapped[dict] = mapped_column(JSON, default=dict)  # sheets processed/skipped
    superseded_import_id: Mapped[int | None] = mapped_column(ForeignKey("ratebook_imports.id", ondelete="SET NULL"), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    rates: Mapped[list["ProviderRate"]] = relationship(back_populates="ratebook_import", cascade="all, delete-orphan")

Index("ix_import_provider_contract_latest", RatebookImport.provider_code, RatebookImport.contract_type, RatebookImport.is_latest)

class ProviderRate(Base):
    __tablename__ = "provider_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(ForeignKey("ratebook_imports.id", ondelete="CASCADE"), index=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True, index=True)
    cap_code: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)  # VehicleCapMatch.source_key
    provider_code: Mapped[str] = mapped_column(String, nullable=False)
    contract_type: Mapped[str] = mapped_column(String, nullable=False)

    # as parsed
    manufacturer: Mapped[str] = mapped_column(String)
    model: Mapped[str] = mapped_column(String)
    variant: Mapped[str | None] = mapped_column(String, nullable=True)
    term: Mapped[int] = mapped_column(Integer)
    annual_mileage: Mapped[int] = mapped_column(Integer)
    payment_plan: Mapped[str] = mapped_column(String)
    initial_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_rental: Mapped[int] = mapped_column(Integer)  # pence

    # optional components, money in pence
    lease_rental: Mapped[int | None] = mapped_column(Integer, nullable=True)
    service_rental: Mapped[int | None] = mapped_column(Integer, nullable=True)
    non_recoverable_vat: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p11d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    otr: Mapped[int | None] = mapped_column(Integer, nullable=True)
    basic_list_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    co2: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fuel_type: Mapped[str | None] = mapped_column(String, nullable=True)
    transmission: Mapped[str | None] = mapped_column(String, nullable=True)
    body_style: Mapped[str | None] = mapped_column(String, nullable=True)
    model_year: Mapped[str | None] = mapped_column(String, nullable=True)
    insurance_group: Mapped[str | None] = mapped_column(String, nullable=True)
    bik_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    bik_tax_lower_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bik_tax_higher_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    whole_life_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    excess_mileage_ppm: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_maintained: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    low_confidence_plan: Mapped[bool] = mapped_column(Boolean, default=False)  # plan code not recognised

    source_sheet: Mapped[str | None] = mapped_column(String, nullable=True)
    source_row_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    ratebook_import: Mapped["RatebookImport"] = relationship(back_populates="rates")
    vehicle: Mapped["Vehicle"] = relationship()

    __table_args__ = (
        CheckConstraint("total_rental > 0", name="ck_rate_total_rental_positive"),
        CheckConstraint("term > 0", name="ck_rate_term_positive"),
        CheckConstraint("annual_mileage > 0", name="ck_rate_mileage_positive"),
    )

Index("ix_rate_provider_contract", ProviderRate.provider_code, ProviderRate.contract_type)
Index("ix_rate_source_vehicle", ProviderRate.provider_code, ProviderRate.manufacturer, ProviderRate.model)

# --- matching ---
class VehicleCapMatch(Base):
    __tablename__ = "vehicle_cap_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_provider: Mapped[str] = mapped_column(String, nullable=False, index=True)
    source_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    manufacturer: Mapped[str] = mapped_column(String)
    model: Mapped[str] = mapped_column(String)
    variant: Mapped[str | None] = mapped_column(String, nullable=True)
    p11d: Mapped[int | None] = mapped_column(Integer, nullable=True)

    cap_code: Mapped[str | None] = mapped_column(String, nullable=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    matched_manufacturer: Mapped[str | None] = mapped_column(String, nullable=True)
    matched_model: Mapped[str | None] = mapped_column(String, nullable=True)
    matched_variant: Mapped[str | None] = mapped_column(String, nullable=True)
    matched_p11d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    match_confidence: Mapped[int] = mapped_column(Integer, default=0)  # 0..100
    match_status: Mapped[MatchStatus] = mapped_column(Enum(MatchStatus), default=MatchStatus.PENDING, nullable=False)
    match_method: Mapped[str | None] = mapped_column(String, nullable=True)  # exact | model-only | none | manual

    matched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

Index("ix_cap_match_status", VehicleCapMatch.match_status)

# --- provider configuration ---
class ProviderMapping(Base):
    __tablename__ = "provider_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    column_mappings: Mapped[dict] = mapped_column(JSON, default=dict)  # header -> canonical field
    file_format: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

# --- persisted import queue ---
class ImportJob(Base):
    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)  # uuid str
    provider_code: Mapped[str] = mapped_column(String, nullable=False)
    contract_type: Mapped[str] = mapped_column(String, nullable=False)
    file_name: Mapped[str] = mapped_column(String)
    content: Mapped[bytes] = mapped_column(LargeBinary)
    options: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


Index("ix_import_job_status_provider", ImportJob.status, ImportJob.provider_code)
