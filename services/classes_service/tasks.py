"""Background jobs for the classes service."""

from datetime import datetime
from typing import Optional

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.classes_service.services.credit_cycle import (
    CreditCycleReport,
    run_monthly_credit_topup_and_expiry,
)

logger = get_logger(__name__)


async def run_monthly_credit_cycle(run_at: Optional[datetime] = None) -> CreditCycleReport:
    """Open a session and run the monthly top-up and expiry."""
    async with AsyncSessionLocal() as db:
        report = await run_monthly_credit_topup_and_expiry(db, run_at=run_at)

    if report.failures:
        logger.warning(
            "Monthly credit cycle %s finished with %d failures",
            report.run_id,
            len(report.failures),
        )
    return report
