"""
Durable job bookkeeping.

Celery moves the work; this table carries the idempotency key, lifecycle
state, retry count and lease of every job so duplicate enqueues can be
refused and failed jobs stay visible for inspection.
"""
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, Index
from datetime import datetime
import enum
from dmarc_pipeline.database import Base


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


# States in which a job is still owned by the queue
IN_FLIGHT_STATES = (JobState.WAITING.value, JobState.ACTIVE.value, JobState.DELAYED.value)


class JobRecord(Base):
    __tablename__ = "job_records"
    __table_args__ = (
        Index("ix_job_records_queue_state", "queue", "state"),
    )

    # Idempotency key, also used as the Celery task id
    id = Column(String(255), primary_key=True)
    queue = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)

    state = Column(String(20), default=JobState.WAITING.value, nullable=False)
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=1, nullable=False)

    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<JobRecord(id={self.id}, queue={self.queue}, state={self.state})>"
