from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_engine.models.job_locks import JobLock


def _ensure_lock_row(db: Session, job_name: str) -> None:
    if db.query(JobLock.id).filter(JobLock.job_name == job_name).first():
        return
    db.add(JobLock(job_name=job_name))
    try:
        db.commit()
    except IntegrityError:
        # Another worker created the row first.
        db.rollback()


def try_acquire_lock(
    db: Session,
    *,
    job_name: str,
    owner: str,
    now: datetime,
    ttl_seconds: int,
) -> bool:
    """Claim the named lock if it is free or its holder's lease expired.

    The claim is a single conditional UPDATE so two workers racing for the
    same lock cannot both see a row count of one.
    """
    _ensure_lock_row(db, job_name)
    updated = (
        db.query(JobLock)
        .filter(
            JobLock.job_name == job_name,
            or_(JobLock.locked_by.is_(None), JobLock.expires_at.is_(None), JobLock.expires_at <= now),
        )
        .update(
            {
                JobLock.locked_by: owner,
                JobLock.locked_at: now,
                JobLock.expires_at: now + timedelta(seconds=max(1, int(ttl_seconds))),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def release_lock(db: Session, *, job_name: str, owner: str) -> bool:
    updated = (
        db.query(JobLock)
        .filter(JobLock.job_name == job_name, JobLock.locked_by == owner)
        .update(
            {JobLock.locked_by: None, JobLock.locked_at: None, JobLock.expires_at: None},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def get_lock(db: Session, *, job_name: str) -> JobLock | None:
    return db.query(JobLock).filter(JobLock.job_name == job_name).first()
