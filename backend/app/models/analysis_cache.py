"""
Durable tier of the analysis cache.

One row per (subject, analysis_type). Writers upsert on that key, so a
refresh replaces the payload and resets ``expires_at`` in place.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint

from ..core.db import Base


class CacheEntry(Base):
    __tablename__ = "analysis_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject = Column(String(32), nullable=False)
    analysis_type = Column(String(64), nullable=False)  # market-data, sentiment, news, ...
    payload = Column(JSON, nullable=False)
    quality_score = Column(Integer, nullable=True)  # 0-100
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("subject", "analysis_type", name="uq_analysis_cache_subject_type"),
        Index("ix_analysis_cache_expires_at", "expires_at"),
    )
