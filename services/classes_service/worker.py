"""ARQ worker for the monthly class-credit cycle."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_monthly_credit_cycle(ctx: dict):
    from services.classes_service.tasks import run_monthly_credit_cycle

    logger.info("Running: monthly_credit_cycle")
    report = await run_monthly_credit_cycle()
    return {
        "run_id": str(report.run_id),
        "period_key": report.period_key,
        "products_processed": report.products_processed,
        "grants_issued": report.grants_issued,
        "credits_expired": report.credits_expired,
        "failures": len(report.failures),
    }


class WorkerSettings:
    redis_settings = get_redis_settings()
    on_startup = startup

    functions = [task_monthly_credit_cycle]

    cron_jobs = [
        # 00:05 UTC on the 1st of every month
        cron(task_monthly_credit_cycle, month_day=1, hour=0, minute=5),
    ]
