from __future__ import annotations

import asyncio
import traceback

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.logging import logger
from app.schemas.capacity import CapacityAlert, RiskLevel
from app.services.admin_email_service import send_admin_alert_email
from app.services.capacity_alert_service import monitor_capacity_alerts
from core.settings import get_settings
from db.session import AsyncSessionLocal

_settings = get_settings()
_scheduler: AsyncIOScheduler | None = None
_job_lock = asyncio.Lock()


def format_critical_summary(alerts: list[CapacityAlert]) -> str:
    lines = [
        f"- therapist {a.therapist_id}: {a.utilization_percentage}% ({a.message_en})"
        for a in alerts
    ]
    return "Therapists at critical capacity:\n" + "\n".join(lines)


async def _run_capacity_alert_job() -> None:
    """Run the capacity alert sweep once and mail critical alerts.

    The job is guarded by a lock to prevent overlapping runs if a previous
    execution has not completed yet.
    """

    if _job_lock.locked():
        logger.warning(
            "Capacity alert scheduler skipped: previous run still in progress."
        )
        return

    async with _job_lock:
        logger.info("Capacity alert scheduler started.")
        async with AsyncSessionLocal() as session:
            try:
                sweep = await monitor_capacity_alerts(session)
            except Exception:
                detail = traceback.format_exc()
                try:
                    await send_admin_alert_email(
                        subject="Therapy scheduling: capacity alert sweep failed",
                        body=detail,
                    )
                except Exception:
                    logger.warning(
                        "Capacity alert scheduler failed to send admin alert email.",
                        exc_info=True,
                    )
                logger.warning(
                    "Capacity alert scheduler failed to complete.", exc_info=True
                )
                raise

        if not sweep.success:
            logger.warning("Capacity alert sweep unsuccessful: %s", sweep.message)
            await send_admin_alert_email(
                subject="Therapy scheduling: capacity alert sweep aborted",
                body=sweep.message or "",
            )
            return

        critical = [a for a in sweep.alerts if a.severity == RiskLevel.CRITICAL]
        logger.info(
            "Capacity alert scheduler completed. %d therapists checked, %d alerts (%d critical).",
            sweep.therapists_checked,
            len(sweep.alerts),
            len(critical),
        )
        if critical:
            await send_admin_alert_email(
                subject=f"Therapy scheduling: {len(critical)} therapists at critical capacity",
                body=format_critical_summary(critical),
            )


def start_capacity_alert_scheduler() -> None:
    """Start the capacity alert scheduler if enabled."""

    global _scheduler
    if _scheduler is not None:
        return

    if not _settings.capacity_alert_scheduler_enabled:
        logger.info("Capacity alert scheduler disabled by settings.")
        return

    trigger = CronTrigger.from_crontab(
        _settings.capacity_alert_cron,
        timezone=_settings.clinic_timezone,
    )
    _scheduler = AsyncIOScheduler(timezone=_settings.clinic_timezone)
    _scheduler.add_job(
        _run_capacity_alert_job,
        trigger=trigger,
        id="capacity_alert_sweep",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    _scheduler.start()
    logger.info(
        "Capacity alert scheduler started (cron=%s, timezone=%s).",
        _settings.capacity_alert_cron,
        _settings.clinic_timezone,
    )


def shutdown_capacity_alert_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return

    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Capacity alert scheduler stopped.")
