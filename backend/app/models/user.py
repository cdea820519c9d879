"""
User model.
Authenticated via Firebase (firebase_uid); credits live in CreditAccount.
"""
from sqlalchemy import Column, String, Index, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from app.models.base import Base, generate_uuid


class User(Base):
    """Application user."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    firebase_uid = Column(String(128), nullable=False, unique=True)  # Firebase user ID
    email = Column(String(255), nullable=True)  # Email from Firebase token
    display_name = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    credit_account = relationship("CreditAccount", back_populates="user", uselist=False)

    __table_args__ = (
        Index("idx_user_firebase_uid", "firebase_uid"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, firebase_uid={self.firebase_uid})>"
