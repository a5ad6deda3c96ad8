"""
SQLAlchemy ORM model for background jobs.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Enum as SAEnum, Float, Integer, String, Text

from sha_claims.models.database import Base, utcnow
from sha_claims.models.schemas import JobState


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    payload = Column(Text, nullable=False, default="{}")
    state = Column(SAEnum(JobState), nullable=False, default=JobState.WAITING, index=True)

    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Float, nullable=False, default=60.0)
    run_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    result = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()
