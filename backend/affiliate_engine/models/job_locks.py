from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from affiliate_engine.core.db import Base
from affiliate_engine.models.mixins import TimestampMixin


class JobLock(TimestampMixin, Base):
    __tablename__ = "job_locks"
    __table_args__ = (UniqueConstraint("job_name", name="uq_job_locks_job_name"),)

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False)
    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
