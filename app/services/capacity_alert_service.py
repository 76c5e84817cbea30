from __future__ import annotations

"""Capacity alert sweep over all active therapists."""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import logger
from app.models.therapist import Therapist
from app.schemas.capacity import CapacityAlert, CapacityAlertSweep, RiskLevel
from app.services.engine_errors import DataUnavailableError
from app.services.workload_service import clinic_now, load_workload_snapshot


CRITICAL_ALERT_THRESHOLD = 95.0
HIGH_ALERT_THRESHOLD = 85.0

_SEVERITY_RANK = {RiskLevel.CRITICAL: 0, RiskLevel.HIGH: 1}


async def _load_active_therapist_ids(db: AsyncSession) -> list[int]:
    stmt = select(Therapist.id).where(Therapist.is_active.is_(True)).order_by(Therapist.id)
    return list((await db.execute(stmt)).scalars().all())


def build_alert(
    therapist_id: int, utilization: float, triggered_at: datetime
) -> CapacityAlert | None:
    """Return an alert for ``utilization`` or ``None`` below the thresholds."""

    pct = round(utilization, 2)
    if utilization >= CRITICAL_ALERT_THRESHOLD:
        return CapacityAlert(
            alert_id=str(uuid.uuid4()),
            therapist_id=therapist_id,
            alert_type="capacity_critical",
            severity=RiskLevel.CRITICAL,
            utilization_percentage=pct,
            message_ar=f"المعالج وصل إلى {pct}% من السعة القصوى",
            message_en=f"Therapist has reached {pct}% of maximum capacity",
            triggered_at=triggered_at,
            requires_immediate_action=True,
            recommended_actions=[
                "إيقاف التعيينات الجديدة / Stop new assignments",
                "إعادة توزيع الطلاب / Redistribute students to other therapists",
            ],
        )
    if utilization >= HIGH_ALERT_THRESHOLD:
        return CapacityAlert(
            alert_id=str(uuid.uuid4()),
            therapist_id=therapist_id,
            alert_type="capacity_high",
            severity=RiskLevel.HIGH,
            utilization_percentage=pct,
            message_ar=f"المعالج يقترب من السعة القصوى ({pct}%)",
            message_en=f"Therapist is approaching maximum capacity ({pct}%)",
            triggered_at=triggered_at,
            requires_immediate_action=False,
            recommended_actions=[
                "مراجعة جدول المعالج / Review therapist schedule",
                "تجنب التعيينات الجديدة / Avoid new assignments",
            ],
            auto_resolution_available=True,
        )
    return None


def sort_alerts(alerts: list[CapacityAlert]) -> list[CapacityAlert]:
    """Order alerts severity-first, then most recent first."""
    return sorted(
        alerts,
        key=lambda a: (
            _SEVERITY_RANK.get(a.severity, len(_SEVERITY_RANK)),
            -a.triggered_at.timestamp(),
            -a.utilization_percentage,
            a.therapist_id,
        ),
    )


async def monitor_capacity_alerts(
    db: AsyncSession, now: datetime | None = None
) -> CapacityAlertSweep:
    """Compute workload for every active therapist and collect alerts.

    A failed read of any therapist aborts the sweep with ``success=False``;
    a partial list would hide therapists that may be over capacity.
    """

    now = now or clinic_now()
    try:
        therapist_ids = await _load_active_therapist_ids(db)
    except SQLAlchemyError:
        logger.warning("Capacity alert sweep could not list therapists", exc_info=True)
        return CapacityAlertSweep(success=False, message="Therapist data unavailable")

    alerts: list[CapacityAlert] = []
    for therapist_id in therapist_ids:
        try:
            snapshot = await load_workload_snapshot(db, therapist_id, now.date())
        except DataUnavailableError as exc:
            logger.warning(
                "Capacity alert sweep aborted at therapist %s: %s", therapist_id, exc
            )
            return CapacityAlertSweep(
                success=False,
                therapists_checked=len(therapist_ids),
                message=f"Capacity alert sweep aborted: {exc}",
            )
        alert = build_alert(therapist_id, snapshot.metrics.utilization_percentage, now)
        if alert is not None:
            alerts.append(alert)

    return CapacityAlertSweep(
        success=True, alerts=sort_alerts(alerts), therapists_checked=len(therapist_ids)
    )
