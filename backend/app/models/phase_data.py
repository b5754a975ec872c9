"""
Per-session phase payloads.

Phases of one pipeline run may execute in different processes, so each
phase's merged payload is written here and later phases rehydrate their
context from it using only the session token.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint

from ..core.db import Base


class PhaseRecord(Base):
    __tablename__ = "phase_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False)
    subject = Column(String(32), nullable=False)
    phase = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "subject", "phase", name="uq_phase_data_session_subject_phase"),
        Index("ix_phase_data_expires_at", "expires_at"),
    )
