"""
TrainedModel: a user's destination model produced by a training job.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Enum as SQLEnum
from datetime import datetime
import enum

from app.models.base import Base, generate_uuid


class TrainedModelStatus(str, enum.Enum):
    """Lifecycle of a trained model."""
    TRAINING = "training"
    READY = "ready"
    FAILED = "failed"


class TrainedModel(Base):
    """User-specific trained model and its resolved artifacts."""

    __tablename__ = "trained_models"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    trigger_word = Column(String(64), nullable=False)

    # Destination captured before training runs, e.g. "studio/user-1a2b3c4d-selfie-lora"
    destination_model = Column(String(255), nullable=False)
    version_id = Column(String(128), nullable=True)
    weights_url = Column(String(1024), nullable=True)

    status = Column(
        SQLEnum(
            TrainedModelStatus,
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=TrainedModelStatus.TRAINING,
    )

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<TrainedModel(id={self.id}, destination={self.destination_model}, status={self.status})>"
