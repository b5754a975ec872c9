from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey
from datetime import datetime

from ..core.db import Base

class JobTraceEvent(Base):
    __tablename__ = "job_trace_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36),
                    ForeignKey("analysis_jobs.id", ondelete="CASCADE"),
                    index=True,
                    nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    phase = Column(String, nullable=False)   # "DISPATCH", "WORKER", "REAPER", …
    step = Column(String, nullable=True)     # "status:processing", "compute:start", …
    label = Column(String, nullable=False)   # short human-readable summary
    detail = Column(String, nullable=True)   # one-paragraph explanation
    meta = Column(JSON, nullable=True)       # small, structured extras for UI
