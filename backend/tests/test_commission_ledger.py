import os
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")
os.environ["SKIP_MIGRATIONS"] = "1"

from affiliate_engine.core.affiliates import attribute_signup, register_affiliate  # noqa: E402
from affiliate_engine.core.commissions import (  # noqa: E402
    accrue,
    build_affiliate_summary,
    effective_status,
    list_available,
    process_invoice_commission,
    process_order_commission,
    void_commissions,
)
from affiliate_engine.core.db import Base  # noqa: E402
from affiliate_engine.core.errors import AffiliateValidationError  # noqa: E402
from affiliate_engine.core.promo_codes import create_promo_code  # noqa: E402
from affiliate_engine.crud.commissions import create_payout, mark_entries_paid  # noqa: E402
from affiliate_engine.crud.users import create_user  # noqa: E402
from affiliate_engine.models.affiliates import CommissionLedger  # noqa: E402
from affiliate_engine.models.enums import (  # noqa: E402
    CommissionEventTypeEnum,
    CommissionStatusEnum,
    PayoutStatusEnum,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _setup_db(db_url: str):
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


@pytest.fixture
def db():
    SessionLocal = _setup_db(f"sqlite:///./commission_ledger_{uuid4().hex}.db")
    with SessionLocal() as session:
        yield session


def _user(db, label: str):
    return create_user(db, email=f"{label}-{uuid4().hex[:6]}@example.com")


def _affiliate(db, label: str, *, parent_id=None):
    owner = _user(db, label)
    return register_affiliate(db, user_id=owner.id, code=f"{label}_{uuid4().hex[:6]}", parent_affiliate_id=parent_id)


def test_accrue_is_idempotent_on_event_id(db):
    affiliate = _affiliate(db, "idem")

    first = accrue(
        db,
        affiliate_id=affiliate.id,
        amount_cents=1200,
        event_id="order_1",
        event_type=CommissionEventTypeEnum.ORDER_PAID,
        now=NOW,
    )
    replay = accrue(
        db,
        affiliate_id=affiliate.id,
        amount_cents=1200,
        event_id="order_1",
        event_type=CommissionEventTypeEnum.ORDER_PAID,
        now=NOW + timedelta(hours=1),
    )

    assert replay.id == first.id
    assert db.query(CommissionLedger).count() == 1
    assert first.status == CommissionStatusEnum.PENDING
    assert first.available_at == NOW + timedelta(days=14)


def test_accrue_rejects_zero_and_unexpected_negative_amounts(db):
    affiliate = _affiliate(db, "amounts")

    with pytest.raises(AffiliateValidationError):
        accrue(db, affiliate_id=affiliate.id, amount_cents=0, event_id="z", event_type=CommissionEventTypeEnum.ORDER_PAID)
    with pytest.raises(AffiliateValidationError):
        accrue(
            db, affiliate_id=affiliate.id, amount_cents=-50, event_id="n", event_type=CommissionEventTypeEnum.ORDER_PAID
        )

    adjustment = accrue(
        db,
        affiliate_id=affiliate.id,
        amount_cents=-50,
        event_id="adj_1",
        event_type=CommissionEventTypeEnum.MANUAL_ADJUSTMENT,
        holdback_days=0,
        now=NOW,
    )
    assert adjustment.amount_cents == -50
    assert list_available(db, now=NOW + timedelta(days=1)) == {}


def test_holdback_gates_availability(db):
    affiliate = _affiliate(db, "holdback")
    entry = accrue(
        db,
        affiliate_id=affiliate.id,
        amount_cents=700,
        event_id="order_h",
        event_type=CommissionEventTypeEnum.ORDER_PAID,
        now=NOW,
    )

    assert list_available(db, now=NOW + timedelta(days=13)) == {}
    assert effective_status(entry, NOW + timedelta(days=13)) == CommissionStatusEnum.PENDING

    matured = NOW + timedelta(days=14)
    grouped = list_available(db, now=matured)
    assert [e.id for e in grouped[affiliate.id]] == [entry.id]
    assert effective_status(entry, matured) == CommissionStatusEnum.AVAILABLE


def test_order_commission_for_top_affiliate_counts_each_attributed_side(db):
    affiliate = _affiliate(db, "top")
    buyer = _user(db, "buyer")
    seller = _user(db, "seller")
    attribute_signup(db, user_id=buyer.id, referral_code=affiliate.code, now=NOW)

    single = process_order_commission(
        db, order_id="order_a", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    )
    attribute_signup(db, user_id=seller.id, referral_code=affiliate.code, now=NOW)
    both = process_order_commission(
        db, order_id="order_b", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    )

    assert [e.amount_cents for e in single] == [250]
    assert [e.amount_cents for e in both] == [500]
    assert single[0].attribution_id is not None


def test_order_commission_for_sub_affiliate_credits_parent(db):
    top = _affiliate(db, "parent")
    sub = _affiliate(db, "child", parent_id=top.id)
    buyer = _user(db, "buyer")
    seller = _user(db, "seller")
    attribute_signup(db, user_id=buyer.id, referral_code=sub.code, now=NOW)

    entries = process_order_commission(
        db, order_id="order_s", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    )
    replay = process_order_commission(
        db, order_id="order_s", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    )

    by_event = {entry.event_id: entry for entry in entries}
    assert by_event["order_s"].affiliate_id == sub.id
    assert by_event["order_s"].amount_cents == 200
    assert by_event["order_s_parent"].affiliate_id == top.id
    assert by_event["order_s_parent"].amount_cents == 50
    assert sorted(e.id for e in replay) == sorted(e.id for e in entries)


def test_unattributed_order_accrues_nothing(db):
    buyer = _user(db, "buyer")
    seller = _user(db, "seller")

    assert process_order_commission(
        db, order_id="order_x", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    ) == []


def test_invoice_commission_applies_promo_discount_and_parent_share(db):
    top = _affiliate(db, "parent")
    sub = _affiliate(db, "child", parent_id=top.id)
    business = _user(db, "business")
    attribution = attribute_signup(db, user_id=business.id, referral_code=sub.code, is_business=True, now=NOW)
    promo = create_promo_code(db, affiliate=sub, code="HALFOFF", discount_share_pct=75)

    entries = process_invoice_commission(
        db,
        invoice_id="in_1",
        subscription_fee_cents=10000,
        attribution=attribution,
        promo_code=promo,
        now=NOW,
    )

    by_event = {entry.event_id: entry for entry in entries}
    assert by_event["in_1"].amount_cents == 1000
    assert by_event["in_1"].event_type == CommissionEventTypeEnum.INVOICE_PAID
    assert by_event["in_1"].meta_json["discount_cents"] == 3000
    assert by_event["in_1_parent"].affiliate_id == top.id
    assert by_event["in_1_parent"].amount_cents == 1000


def test_void_leaves_paid_entries_untouched(db):
    top = _affiliate(db, "parent")
    sub = _affiliate(db, "child", parent_id=top.id)
    buyer = _user(db, "buyer")
    seller = _user(db, "seller")
    attribute_signup(db, user_id=buyer.id, referral_code=sub.code, now=NOW)
    entries = process_order_commission(
        db, order_id="order_v", platform_fee_cents=1000, buyer_id=buyer.id, seller_id=seller.id, now=NOW
    )
    parent_entry = next(e for e in entries if e.event_id == "order_v_parent")
    payout = create_payout(
        db,
        affiliate_id=top.id,
        amount_cents=parent_entry.amount_cents,
        currency="eur",
        status=PayoutStatusEnum.SENT,
        transfer_id="tr_test",
        idempotency_key="key-void-test",
        entry_count=1,
        period_start=NOW,
        period_end=NOW,
        created_at=NOW,
    )
    mark_entries_paid(db, entry_ids=[parent_entry.id], payout_id=payout.id, paid_at=NOW)
    db.commit()

    result = void_commissions(db, event_id="order_v", reason="refund")

    assert result["voided"] == 1
    assert result["already_paid"] == [parent_entry.id]
    db.expire_all()
    statuses = {e.event_id: e.status for e in db.query(CommissionLedger).all()}
    assert statuses == {"order_v": CommissionStatusEnum.VOID, "order_v_parent": CommissionStatusEnum.PAID}


def test_affiliate_summary_totals_by_effective_state(db):
    affiliate = _affiliate(db, "summary")
    accrue(db, affiliate_id=affiliate.id, amount_cents=300, event_id="s1",
           event_type=CommissionEventTypeEnum.ORDER_PAID, now=NOW - timedelta(days=20))
    accrue(db, affiliate_id=affiliate.id, amount_cents=400, event_id="s2",
           event_type=CommissionEventTypeEnum.ORDER_PAID, now=NOW)
    accrue(db, affiliate_id=affiliate.id, amount_cents=500, event_id="s3",
           event_type=CommissionEventTypeEnum.ORDER_PAID, now=NOW)
    void_commissions(db, event_id="s3", reason="refund")

    summary = build_affiliate_summary(db, affiliate_id=affiliate.id, now=NOW)

    assert summary["available_cents"] == 300
    assert summary["pending_cents"] == 400
    assert summary["void_cents"] == 500
    assert summary["paid_cents"] == 0
    assert summary["code"] == affiliate.code
