"""
SQLAlchemy models for the attendance service.
"""
from sqlalchemy import (Boolean, Column, Date, DateTime, Float, ForeignKey, Integer,
                        LargeBinary, String, UniqueConstraint)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Identity(Base):
    """Enrolled person with a reference photo and its content fingerprint."""
    __tablename__ = "identities"

    id = Column(String, primary_key=True, index=True)  # e.g., register number
    name = Column(String, nullable=False, default="")
    fingerprint = Column(String(64), unique=True, nullable=False, index=True)
    image_data = Column(LargeBinary, nullable=False)  # Normalized reference photo
    enrolled_at = Column(DateTime, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)


class AttendanceRecord(Base):
    """One attendance outcome per identity per day."""
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("identity_id", "day", name="uq_attendance_identity_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String, ForeignKey("identities.id"), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    outcome = Column(String, nullable=False)  # present / absent
    leave_reason = Column(String, nullable=True)  # Only set when present and on leave
    method = Column(String, nullable=False)  # manual / fingerprint-match / visual-match
    committed_by = Column(String, nullable=False)
    committed_at = Column(DateTime, nullable=False)
    confidence = Column(Float, nullable=True)
