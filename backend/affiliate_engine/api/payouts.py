from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from affiliate_engine.api.dependencies import require_payout_trigger
from affiliate_engine.core.db import get_db
from affiliate_engine.core.metrics import record_job_run
from affiliate_engine.jobs.affiliate_payouts import JOB_NAME, run_payout_batch
from affiliate_engine.schemas.payouts import PayoutRunRead


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliate/payouts", tags=["payouts"])


@router.post("/process", response_model=PayoutRunRead)
def process_payouts(
    db: Session = Depends(get_db),
    triggered_by: str = Depends(require_payout_trigger()),
):
    logger.info("affiliate_payout.triggered", extra={"triggered_by": triggered_by})
    success = False
    try:
        summary = run_payout_batch(db)
        success = True
    finally:
        record_job_run(job_name=JOB_NAME, success=success)
    return PayoutRunRead(**summary.to_dict())
