"""Internal endpoints triggered by the external scheduler.

Not proxied by the gateway; guarded by CRON_SECRET.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from libs.auth.dependencies import require_cron_secret
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.classes_service.schemas import CreditCycleRunResponse
from services.classes_service.services.credit_cycle import (
    run_monthly_credit_topup_and_expiry,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/internal/classes", tags=["internal-classes"])


@router.post(
    "/cron/monthly-credits",
    response_model=CreditCycleRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def trigger_monthly_credit_cycle(
    run_at: Optional[datetime] = None,
    db: AsyncSession = Depends(get_async_db),
):
    """Grant this month's periodic credits and expire last month's leftovers."""
    report = await run_monthly_credit_topup_and_expiry(db, run_at=run_at)
    return CreditCycleRunResponse(
        run_id=report.run_id,
        period_key=report.period_key,
        products_processed=report.products_processed,
        grants_issued=report.grants_issued,
        credits_expired=report.credits_expired,
        failures=report.failures,
    )
