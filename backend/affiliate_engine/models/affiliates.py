from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    AttributionSourceEnum,
    AttributionTypeEnum,
    CommissionEventTypeEnum,
    CommissionStatusEnum,
    PayoutStatusEnum,
    PromoCodeStatusEnum,
)
from affiliate_engine.models.mixins import CreatedAtMixin, TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")
CENTS_TYPE = BigInteger().with_variant(Integer, "sqlite")


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, validate_strings=True)


class Affiliate(TimestampMixin, Base):
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint("code", name="uq_affiliates_code"),
        UniqueConstraint("user_id", name="uq_affiliates_user"),
        CheckConstraint("parent_affiliate_id IS NULL OR parent_affiliate_id <> id", name="ck_affiliates_not_own_parent"),
        Index("ix_affiliates_status", "status"),
        Index("ix_affiliates_parent", "parent_affiliate_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    status = Column(_enum(AffiliateStatusEnum, "affiliate_status_enum"), nullable=False, default=AffiliateStatusEnum.PENDING)
    code = Column(String, nullable=False)
    parent_affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=True)
    payout_account_id = Column(String, nullable=True)
    payout_account_ready = Column(Boolean, nullable=False, default=False)
    custom_user_commission_pct = Column(Numeric(5, 4), nullable=True)
    custom_business_commission_pct = Column(Numeric(5, 4), nullable=True)
    custom_parent_user_commission_pct = Column(Numeric(5, 4), nullable=True)
    custom_parent_business_commission_pct = Column(Numeric(5, 4), nullable=True)

    parent = relationship("Affiliate", remote_side=[id], back_populates="children", lazy="selectin")
    children = relationship("Affiliate", back_populates="parent", lazy="selectin")

    @property
    def is_sub_affiliate(self) -> bool:
        return self.parent_affiliate_id is not None


class Attribution(CreatedAtMixin, Base):
    __tablename__ = "affiliate_attributions"
    __table_args__ = (
        Index("ix_affiliate_attributions_triple", "user_id", "affiliate_id", "type", "ends_at"),
        Index("ix_affiliate_attributions_affiliate", "affiliate_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False)
    type = Column(_enum(AttributionTypeEnum, "attribution_type_enum"), nullable=False)
    source = Column(_enum(AttributionSourceEnum, "attribution_source_enum"), nullable=False)
    ends_at = Column(DateTime, nullable=False)
    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    affiliate = relationship("Affiliate", lazy="selectin")


class PromoCode(TimestampMixin, Base):
    __tablename__ = "affiliate_promo_codes"
    __table_args__ = (
        UniqueConstraint("code", name="uq_affiliate_promo_codes_code"),
        CheckConstraint(
            "discount_share_pct >= 0 AND discount_share_pct <= 100",
            name="ck_affiliate_promo_codes_discount_range",
        ),
        CheckConstraint("redemption_count >= 0", name="ck_affiliate_promo_codes_redemptions"),
        Index("ix_affiliate_promo_codes_affiliate", "affiliate_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False)
    code = Column(String, nullable=False)
    discount_share_pct = Column(Integer, nullable=False, default=0)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=True)
    max_redemptions = Column(Integer, nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0)
    status = Column(_enum(PromoCodeStatusEnum, "promo_code_status_enum"), nullable=False, default=PromoCodeStatusEnum.ACTIVE)

    affiliate = relationship("Affiliate", lazy="selectin")


class CommissionLedger(TimestampMixin, Base):
    __tablename__ = "affiliate_commission_ledger"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_affiliate_commission_event"),
        Index("ix_affiliate_commission_affiliate", "affiliate_id"),
        Index("ix_affiliate_commission_sweep", "status", "available_at"),
        Index("ix_affiliate_commission_payout", "payout_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(_enum(CommissionEventTypeEnum, "commission_event_type_enum"), nullable=False)
    amount_cents = Column(CENTS_TYPE, nullable=False)
    currency = Column(String, nullable=False, default="eur")
    status = Column(_enum(CommissionStatusEnum, "commission_status_enum"), nullable=False, default=CommissionStatusEnum.PENDING)
    available_at = Column(DateTime, nullable=True)
    attribution_id = Column(Integer, ForeignKey("affiliate_attributions.id", ondelete="SET NULL"), nullable=True)
    payout_id = Column(Integer, ForeignKey("affiliate_payouts.id", ondelete="RESTRICT"), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    void_reason = Column(Text, nullable=True)
    meta_json = Column(JSON_TYPE, nullable=True)


class AffiliatePayout(CreatedAtMixin, Base):
    __tablename__ = "affiliate_payouts"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_affiliate_payouts_idempotency"),
        CheckConstraint("amount_cents > 0", name="ck_affiliate_payouts_positive"),
        Index("ix_affiliate_payouts_affiliate_period", "affiliate_id", "status", "period_end"),
    )

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False)
    amount_cents = Column(CENTS_TYPE, nullable=False)
    currency = Column(String, nullable=False)
    status = Column(_enum(PayoutStatusEnum, "affiliate_payout_status_enum"), nullable=False)
    transfer_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False)
    entry_count = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    failure_reason = Column(Text, nullable=True)
