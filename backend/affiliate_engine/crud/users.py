from __future__ import annotations

from sqlalchemy.orm import Session

from affiliate_engine.models.users import User


def get_user(db: Session, user_id: int) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(db: Session, *, email: str, role: str = "user") -> User:
    user = User(email=email.strip().lower(), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
