"""
GenerationJob model tracking asynchronous provider jobs.
Each job consumes credits up front; the reconciliation loop is the only
writer of status, progress and result artifacts.
"""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from datetime import datetime
import enum

from app.models.base import Base, generate_uuid


class JobType(str, enum.Enum):
    """Kind of asynchronous job."""
    TRAINING = "training"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"


class JobStatus(str, enum.Enum):
    """Local job status."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class FailureReason(str, enum.Enum):
    """Reason codes stored on failed jobs."""
    PROVIDER_FAILED = "provider_failed"
    PROVIDER_CANCELED = "provider_canceled"
    SUBMISSION_FAILED = "submission_failed"
    UNRESOLVED_OUTPUT = "unresolved_output"


def _enum_column(enum_cls, length):
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


class GenerationJob(Base):
    """Persisted state of one submitted provider job."""

    __tablename__ = "generation_jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    job_type = Column(_enum_column(JobType, 32), nullable=False)
    remote_job_id = Column(String(128), nullable=True, unique=True)  # Assigned by provider
    status = Column(_enum_column(JobStatus, 16), nullable=False, default=JobStatus.PENDING)
    provider_status = Column(String(32), nullable=True)  # Last raw status seen
    progress = Column(Integer, nullable=False, default=0)

    cost = Column(Integer, nullable=False, default=0)
    cost_charged = Column(Boolean, nullable=False, default=False)
    cost_refunded = Column(Boolean, nullable=False, default=False)

    input_payload = Column(JSON, nullable=True)
    destination_hint = Column(String(255), nullable=True)  # Captured at submission
    trained_model_id = Column(String(36), ForeignKey("trained_models.id"), nullable=True)

    result_artifacts = Column(JSON, nullable=True)
    failure_reason = Column(String(32), nullable=True)
    failure_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_generation_jobs_user", "user_id", "created_at"),
        Index("idx_generation_jobs_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<GenerationJob(id={self.id}, user_id={self.user_id}, type={self.job_type}, status={self.status})>"
