from sqlalchemy import Column, Integer, String

from affiliate_engine.core.db import Base
from affiliate_engine.models.mixins import TimestampMixin


class User(TimestampMixin, Base):
    """Local mirror of identity-provider accounts; only what authorization needs."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, nullable=False, default="user")

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"
