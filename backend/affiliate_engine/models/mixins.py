from sqlalchemy import Column, DateTime, event

from affiliate_engine.core.time import utcnow


class CreatedAtMixin:
    # Append-only rows (payouts, attributions) only carry a creation stamp.
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class TimestampMixin(CreatedAtMixin):
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @staticmethod
    def _touch_updated_at(mapper, connection, target) -> None:
        target.updated_at = utcnow()

    @classmethod
    def __declare_last__(cls) -> None:
        event.listen(cls, "before_update", cls._touch_updated_at)
