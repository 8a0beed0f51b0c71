import os
import sys
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")
os.environ["SKIP_MIGRATIONS"] = "1"

from affiliate_engine.core.affiliates import register_affiliate  # noqa: E402
from affiliate_engine.core.commissions import accrue  # noqa: E402
from affiliate_engine.core.config import settings  # noqa: E402
from affiliate_engine.core.db import Base  # noqa: E402
from affiliate_engine.core.errors import (  # noqa: E402
    PayoutConfigurationError,
    PayoutRunInProgress,
    TransferFailed,
)
from affiliate_engine.core.time import utcnow  # noqa: E402
from affiliate_engine.crud.commissions import sum_paid_for_payout, void_entries  # noqa: E402
from affiliate_engine.crud.job_locks import get_lock, try_acquire_lock  # noqa: E402
from affiliate_engine.crud.users import create_user  # noqa: E402
import affiliate_engine.jobs.affiliate_payouts as payouts_job  # noqa: E402
from affiliate_engine.jobs.affiliate_payouts import (  # noqa: E402
    JOB_NAME,
    build_idempotency_key,
    run_payout_batch,
)
from affiliate_engine.models.affiliates import AffiliatePayout, CommissionLedger  # noqa: E402
from affiliate_engine.models.enums import (  # noqa: E402
    CommissionEventTypeEnum,
    CommissionStatusEnum,
    PayoutStatusEnum,
)
from affiliate_engine.payouts import StripeTransferClient, TransferClient, TransferResult  # noqa: E402


NOW = datetime(2026, 3, 1, 12, 0, 0)
MATURED = NOW - timedelta(days=20)


class FakeTransferClient(TransferClient):
    name = "fake"

    def __init__(self, fail_destinations=None, on_transfer=None):
        self.calls = []
        self.fail_destinations = set(fail_destinations or [])
        self.on_transfer = on_transfer

    def transfer(self, *, destination, amount_cents, currency, idempotency_key, metadata):
        self.calls.append(
            {
                "destination": destination,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        if self.on_transfer is not None:
            self.on_transfer()
        if destination in self.fail_destinations:
            raise TransferFailed("timed out")
        return TransferResult(transfer_id=f"tr_{len(self.calls)}", amount_cents=amount_cents, currency=currency)


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
def session_factory():
    return _setup_db(f"sqlite:///./affiliate_payouts_{uuid4().hex}.db")


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


def _affiliate(db, label: str, *, account: str | None = "acct_default", ready: bool = True, parent_id=None):
    owner = create_user(db, email=f"{label}-{uuid4().hex[:6]}@example.com")
    return register_affiliate(
        db,
        user_id=owner.id,
        code=f"{label}_{uuid4().hex[:6]}",
        parent_affiliate_id=parent_id,
        payout_account_id=account,
        payout_account_ready=ready,
    )


def _earn(db, affiliate, amount_cents: int, *, when=MATURED):
    return accrue(
        db,
        affiliate_id=affiliate.id,
        amount_cents=amount_cents,
        event_id=f"evt_{uuid4().hex}",
        event_type=CommissionEventTypeEnum.ORDER_PAID,
        now=when,
    )


def _statuses(db, entry_ids):
    db.expire_all()
    rows = db.query(CommissionLedger).filter(CommissionLedger.id.in_(entry_ids)).all()
    return {row.id: row.status for row in rows}


def test_matured_entries_are_paid_in_one_transfer(db):
    affiliate = _affiliate(db, "payee", account="acct_payee")
    first = _earn(db, affiliate, 1200)
    second = _earn(db, affiliate, 900)
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 1
    assert summary.failed == 0
    assert summary.errors == []
    assert len(client.calls) == 1
    assert client.calls[0]["amount_cents"] == 2100
    assert client.calls[0]["destination"] == "acct_payee"
    assert client.calls[0]["currency"] == "eur"

    payout = db.query(AffiliatePayout).one()
    assert payout.status == PayoutStatusEnum.SENT
    assert payout.amount_cents == 2100
    assert payout.entry_count == 2
    assert payout.transfer_id == "tr_1"
    assert payout.period_end == NOW
    assert payout.period_start == NOW - timedelta(days=settings.PAYOUT_LOOKBACK_DAYS)

    db.expire_all()
    entries = db.query(CommissionLedger).filter(CommissionLedger.id.in_([first.id, second.id])).all()
    assert {entry.status for entry in entries} == {CommissionStatusEnum.PAID}
    assert {entry.payout_id for entry in entries} == {payout.id}
    assert sum(entry.amount_cents for entry in entries) == payout.amount_cents


def test_second_run_never_pays_twice(db):
    affiliate = _affiliate(db, "twice")
    _earn(db, affiliate, 1500)
    client = FakeTransferClient()

    first = run_payout_batch(db, now=NOW, transfer_client=client)
    second = run_payout_batch(db, now=NOW + timedelta(hours=1), transfer_client=client)

    assert first.processed == 1
    assert second.processed == 0
    assert second.skipped == 0
    assert len(client.calls) == 1
    assert db.query(AffiliatePayout).count() == 1


def test_total_below_minimum_is_skipped_and_carried_over(db):
    affiliate = _affiliate(db, "small")
    entry = _earn(db, affiliate, 500)
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 0
    assert summary.skipped == 1
    assert summary.errors == []
    assert summary.skips == [{"affiliate_id": affiliate.id, "amount_cents": 500, "reason": "below_minimum"}]
    assert client.calls == []
    assert db.query(AffiliatePayout).count() == 0
    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PENDING}

    _earn(db, affiliate, 600)
    later = run_payout_batch(db, now=NOW + timedelta(days=1), transfer_client=client)
    assert later.processed == 1
    assert client.calls[0]["amount_cents"] == 1100


def test_one_cent_below_minimum_is_skipped_again_with_same_total(db):
    affiliate = _affiliate(db, "almost")
    entry = _earn(db, affiliate, settings.MIN_PAYOUT_AMOUNT_CENTS - 1)
    client = FakeTransferClient()
    expected_skip = {
        "affiliate_id": affiliate.id,
        "amount_cents": settings.MIN_PAYOUT_AMOUNT_CENTS - 1,
        "reason": "below_minimum",
    }

    first = run_payout_batch(db, now=NOW, transfer_client=client)
    second = run_payout_batch(db, now=NOW + timedelta(days=7), transfer_client=client)

    assert first.skips == [expected_skip]
    assert second.skips == [expected_skip]
    assert first.errors == second.errors == []
    assert client.calls == []
    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PENDING}


def test_total_exactly_at_minimum_is_paid(db):
    affiliate = _affiliate(db, "exact")
    entry = _earn(db, affiliate, settings.MIN_PAYOUT_AMOUNT_CENTS)
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 1
    assert summary.skipped == 0
    assert client.calls[0]["amount_cents"] == settings.MIN_PAYOUT_AMOUNT_CENTS
    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PAID}


def test_pending_entries_inside_holdback_are_not_swept(db):
    affiliate = _affiliate(db, "fresh")
    _earn(db, affiliate, 5000, when=NOW - timedelta(days=3))
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 0
    assert summary.skipped == 0
    assert client.calls == []


def test_missing_or_unready_payout_account_is_skipped_with_reason(db):
    no_account = _affiliate(db, "noacct", account=None)
    not_ready = _affiliate(db, "notready", account="acct_pending", ready=False)
    _earn(db, no_account, 2000)
    _earn(db, not_ready, 2000)
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.skipped == 2
    assert client.calls == []
    reasons = {skip["affiliate_id"]: skip["reason"] for skip in summary.skips}
    assert reasons == {no_account.id: "no_payout_account", not_ready.id: "payout_account_not_ready"}
    assert f"Affiliate {no_account.id} has no Stripe Connect account" in summary.errors


def test_failed_transfer_does_not_block_other_affiliates(db):
    broken = _affiliate(db, "broken", account="acct_broken")
    healthy = _affiliate(db, "healthy", account="acct_healthy")
    broken_entry = _earn(db, broken, 3000)
    healthy_entry = _earn(db, healthy, 4000)
    client = FakeTransferClient(fail_destinations={"acct_broken"})

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 1
    assert summary.failed == 1
    assert any("transfer failed" in error for error in summary.errors)
    statuses = _statuses(db, [broken_entry.id, healthy_entry.id])
    assert statuses[broken_entry.id] == CommissionStatusEnum.PENDING
    assert statuses[healthy_entry.id] == CommissionStatusEnum.PAID

    failed = db.query(AffiliatePayout).filter(AffiliatePayout.status == PayoutStatusEnum.FAILED).one()
    assert failed.affiliate_id == broken.id
    assert failed.failure_reason == "timed out"

    retry = run_payout_batch(db, now=NOW, transfer_client=FakeTransferClient())
    assert retry.processed == 1
    assert _statuses(db, [broken_entry.id])[broken_entry.id] == CommissionStatusEnum.PAID


def test_entry_voided_during_transfer_is_never_paid_again(db, session_factory):
    affiliate = _affiliate(db, "racy")
    keep = _earn(db, affiliate, 1500)
    refunded = _earn(db, affiliate, 1500)
    keep_id, refunded_id = keep.id, refunded.id

    def _refund_mid_transfer():
        with session_factory() as other:
            void_entries(other, entry_ids=[refunded_id], reason="refund")

    client = FakeTransferClient(on_transfer=_refund_mid_transfer)

    summary = run_payout_batch(db, now=NOW, transfer_client=client)

    assert summary.processed == 1
    assert summary.failed == 0
    assert "reconciliation required" in summary.errors[0]
    assert "tr_1" in summary.errors[0]
    assert summary.payouts[0]["entry_count"] == 1
    assert _statuses(db, [keep_id, refunded_id]) == {
        keep_id: CommissionStatusEnum.PAID,
        refunded_id: CommissionStatusEnum.VOID,
    }

    payout = db.query(AffiliatePayout).one()
    assert payout.status == PayoutStatusEnum.SENT
    assert payout.amount_cents == 3000
    assert payout.entry_count == 1
    assert payout.failure_reason == "reconciliation_required"
    assert sum_paid_for_payout(db, payout_id=payout.id) == 1500

    clawback = (
        db.query(CommissionLedger)
        .filter(CommissionLedger.event_type == CommissionEventTypeEnum.MANUAL_ADJUSTMENT)
        .one()
    )
    assert clawback.amount_cents == -1500
    assert clawback.affiliate_id == affiliate.id
    assert clawback.meta_json["transfer_id"] == "tr_1"

    later = run_payout_batch(db, now=NOW + timedelta(days=1), transfer_client=client)

    assert later.processed == 0
    assert later.skipped == 0
    assert [call["amount_cents"] for call in client.calls] == [3000]


def test_entry_voided_before_transfer_skips_the_transfer(db, session_factory):
    affiliate = _affiliate(db, "changed")
    _earn(db, affiliate, 1500)
    refunded = _earn(db, affiliate, 1500)
    refunded_id = refunded.id

    def _void_then_continue():
        with session_factory() as other:
            void_entries(other, entry_ids=[refunded_id], reason="refund")
        return True

    client = FakeTransferClient()
    summary = run_payout_batch(db, now=NOW, transfer_client=client, should_continue=_void_then_continue)

    assert summary.failed == 1
    assert client.calls == []
    assert "ledger changed since snapshot" in summary.errors[0]


def test_cancellation_between_affiliates_stops_the_run(db):
    first = _affiliate(db, "first")
    second = _affiliate(db, "second")
    _earn(db, first, 2000)
    _earn(db, second, 2000)
    answers = iter([True, False])
    client = FakeTransferClient()

    summary = run_payout_batch(db, now=NOW, transfer_client=client, should_continue=lambda: next(answers))

    assert summary.cancelled is True
    assert summary.processed == 1
    assert len(client.calls) == 1


def test_next_period_starts_after_last_sent_payout(db):
    affiliate = _affiliate(db, "periods")
    _earn(db, affiliate, 2000)
    client = FakeTransferClient()
    run_payout_batch(db, now=NOW, transfer_client=client)

    _earn(db, affiliate, 2500, when=NOW - timedelta(days=15))
    later = NOW + timedelta(days=7)
    run_payout_batch(db, now=later, transfer_client=client)

    latest = db.query(AffiliatePayout).order_by(AffiliatePayout.id.desc()).first()
    assert latest.period_start == NOW + timedelta(milliseconds=1)
    assert latest.period_end == later
    assert client.calls[1]["idempotency_key"] == build_idempotency_key(
        affiliate.id, NOW + timedelta(milliseconds=1), later
    )


def test_idempotency_key_is_deterministic():
    start = datetime(2026, 2, 1)
    end = datetime(2026, 3, 1)
    assert build_idempotency_key(7, start, end) == build_idempotency_key(7, start, end)
    assert build_idempotency_key(7, start, end) != build_idempotency_key(8, start, end)


def test_concurrent_run_is_rejected_while_lock_is_held(db):
    affiliate = _affiliate(db, "locked")
    entry = _earn(db, affiliate, 2000)
    assert try_acquire_lock(db, job_name=JOB_NAME, owner="other-worker", now=utcnow(), ttl_seconds=600)
    client = FakeTransferClient()

    with pytest.raises(PayoutRunInProgress) as excinfo:
        run_payout_batch(db, now=NOW, transfer_client=client)

    assert excinfo.value.status_code == 409
    assert client.calls == []
    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PENDING}


def test_expired_lock_is_taken_over_and_released(db):
    affiliate = _affiliate(db, "stale")
    _earn(db, affiliate, 2000)
    try_acquire_lock(
        db,
        job_name=JOB_NAME,
        owner="crashed-worker",
        now=utcnow() - timedelta(hours=2),
        ttl_seconds=60,
    )

    summary = run_payout_batch(db, now=NOW, transfer_client=FakeTransferClient())

    assert summary.processed == 1
    db.expire_all()
    assert get_lock(db, job_name=JOB_NAME).locked_by is None


def test_unconfigured_stripe_aborts_before_settlement(db, monkeypatch):
    affiliate = _affiliate(db, "nostripe")
    entry = _earn(db, affiliate, 2000)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    with pytest.raises(PayoutConfigurationError):
        run_payout_batch(db, now=NOW, transfer_client=StripeTransferClient())

    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PENDING}
    assert db.query(AffiliatePayout).count() == 0


def test_stripe_client_sends_idempotent_transfer(monkeypatch):
    captured = {}

    def _fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "tr_stripe_1"}

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr("stripe.Transfer.create", _fake_create)

    result = StripeTransferClient().transfer(
        destination="acct_1",
        amount_cents=2100,
        currency="eur",
        idempotency_key="affiliate-payout-1",
        metadata={"affiliate_id": "1"},
    )

    assert result.transfer_id == "tr_stripe_1"
    assert captured["idempotency_key"] == "affiliate-payout-1"
    assert captured["destination"] == "acct_1"
    assert captured["amount"] == 2100


def test_explicit_missing_transfer_client_aborts_run(db, monkeypatch):
    affiliate = _affiliate(db, "noprovider")
    entry = _earn(db, affiliate, 2000)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")

    with pytest.raises(PayoutConfigurationError):
        run_payout_batch(db, now=NOW, transfer_client=None)

    assert _statuses(db, [entry.id]) == {entry.id: CommissionStatusEnum.PENDING}
    assert db.query(AffiliatePayout).count() == 0


def test_cli_rejects_unknown_provider(monkeypatch):
    recorded = []
    monkeypatch.setattr(sys, "argv", ["affiliate_payouts", "--provider", "paypal"])
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(payouts_job, "record_job_run", lambda **kwargs: recorded.append(kwargs))

    def _no_run(*args, **kwargs):
        raise AssertionError("run_payout_batch must not be called")

    monkeypatch.setattr(payouts_job, "run_payout_batch", _no_run)

    with pytest.raises(SystemExit) as excinfo:
        payouts_job.main()

    assert excinfo.value.code == 2
    assert recorded == [{"job_name": JOB_NAME, "success": False}]
