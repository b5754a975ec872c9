from sqlalchemy import Column, String, JSON, Enum, DateTime, Index
from datetime import datetime
import uuid
import enum
from ..core.db import Base

class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


# Every permitted edge of the job state machine, keyed by target status.
ALLOWED_SOURCES: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PROCESSING: (JobStatus.QUEUED,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.ERROR: (JobStatus.QUEUED, JobStatus.PROCESSING),
}


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subject = Column(String(32), nullable=False, index=True)
    request = Column(JSON, nullable=False)  # {session_id, upto_phase, ...}
    status = Column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    result = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # Reaper scans open jobs by age
        Index("ix_analysis_jobs_status_created_at", "status", "created_at"),
    )
