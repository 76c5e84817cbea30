from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.models.substitution_plan import PlanStatus
from app.schemas.substitution import (
    NotificationPlan,
    RollbackPlan,
    RollbackStep,
    SubstitutionPlan,
    SubstitutionReason,
    SubstitutionRequest,
    TherapistAssignment,
)
from app.services import substitution_service
from app.services.engine_errors import DataUnavailableError, SessionReassignmentError
from app.services.substitution_service import (
    NO_SESSIONS_MESSAGE,
    approve_substitution_plan,
    build_rollback_plan,
    create_substitution_plan,
    execute_substitution_plan,
    find_substitutes,
    rollback_substitution,
)
from tests.utils.factories import make_session, make_therapist, make_workload


NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


def _request(**overrides) -> SubstitutionRequest:
    data = {
        "original_therapist_id": 1,
        "start_date": date(2026, 10, 19),
        "end_date": date(2026, 10, 23),
        "reason": SubstitutionReason.SICK_LEAVE,
    }
    data.update(overrides)
    return SubstitutionRequest(**data)


def _three_sessions():
    return [
        make_session(1, date(2026, 10, 19), "09:00", "10:00"),
        make_session(2, date(2026, 10, 20), "09:00", "10:00"),
        make_session(3, date(2026, 10, 21), "09:00", "10:00"),
    ]


def _patch_search(monkeypatch, *, sessions, pool, workloads, own_sessions=None):
    therapists = {t.id: t for t in pool}
    therapists.setdefault(1, make_therapist(1, specialties=("speech",)))

    async def _fake_therapist(_db, therapist_id):
        return therapists.get(therapist_id)

    async def _fake_snapshot(_db, therapist_id, _as_of=None):
        if therapist_id not in workloads:
            raise DataUnavailableError(f"Therapist {therapist_id} not found")
        return workloads[therapist_id]

    async def _fake_own_sessions(_db, therapist_id, _start, _end):
        return (own_sessions or {}).get(therapist_id, [])

    monkeypatch.setattr(substitution_service, "_load_therapist", _fake_therapist)
    monkeypatch.setattr(
        substitution_service, "_load_affected_sessions", AsyncMock(return_value=sessions)
    )
    monkeypatch.setattr(
        substitution_service, "_load_substitute_pool", AsyncMock(return_value=list(pool))
    )
    monkeypatch.setattr(substitution_service, "load_workload_snapshot", _fake_snapshot)
    monkeypatch.setattr(substitution_service, "_load_therapist_sessions", _fake_own_sessions)


def _stored_plan(status: PlanStatus = PlanStatus.APPROVED, deadline: datetime | None = None):
    deadline = deadline or NOW + timedelta(days=2)
    plan = SubstitutionPlan(
        plan_id="plan-1",
        original_therapist_id=1,
        status=status,
        start_date=date(2026, 10, 19),
        end_date=date(2026, 10, 23),
        reason=SubstitutionReason.SICK_LEAVE,
        total_sessions_affected=3,
        coverage_percentage=100.0,
        disruption_score=12.0,
        assignments=[
            TherapistAssignment(substitute_therapist_id=5, assigned_sessions=[1, 2], capacity_impact=10),
            TherapistAssignment(substitute_therapist_id=6, assigned_sessions=[3], capacity_impact=5),
        ],
        notifications=[
            NotificationPlan(
                recipient_type="therapist",
                recipient_id=therapist_id,
                notification_type="email",
                message_template_ar="ar",
                message_template_en="en",
                send_time=NOW,
                priority="high",
                requires_confirmation=True,
            )
            for therapist_id in (5, 6)
        ]
        + [
            NotificationPlan(
                recipient_type="parent",
                recipient_id=101,
                notification_type="whatsapp",
                message_template_ar="ar",
                message_template_en="en",
                send_time=NOW,
                priority="medium",
            )
        ],
        rollback_plan=RollbackPlan(
            can_rollback=True,
            rollback_deadline=deadline,
            rollback_steps=[
                RollbackStep(step_number=1, action="undo_assignment", action_ar="", action_en="", estimated_time_minutes=5, reversible=True, substitute_therapist_id=5),
                RollbackStep(step_number=2, action="undo_assignment", action_ar="", action_en="", estimated_time_minutes=5, reversible=True, substitute_therapist_id=6),
                RollbackStep(step_number=3, action="notify_cancellation", action_ar="", action_en="", estimated_time_minutes=5, reversible=False),
            ],
            impact_assessment="Minimal impact",
        ),
    )
    return SimpleNamespace(
        plan_id=plan.plan_id,
        original_therapist_id=1,
        status=status,
        can_rollback=True,
        rollback_deadline=deadline,
        plan_data=plan.model_dump(mode="json"),
    )


def _db(rowcount: int = 1) -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    return db


# ---------------------------------------------------------------------------
# find_substitutes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_same_specialty_requirement_filters_candidates(monkeypatch):
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2, specialties=("speech",)), make_therapist(3, specialties=("ot",))],
        workloads={2: make_workload(2, weekly_hours=10), 3: make_workload(3, weekly_hours=0)},
    )

    strict = await find_substitutes(AsyncMock(), _request(require_same_specialty=True))
    loose = await find_substitutes(AsyncMock(), _request())

    assert [c.therapist_id for c in strict.candidates] == [2]
    assert all(c.specialties_match for c in strict.candidates)
    assert {c.therapist_id for c in loose.candidates} == {2, 3}
    assert loose.candidates[0].therapist_id == 2  # compatibility outranks availability
    assert strict.affected_session_ids == [1, 2, 3]


@pytest.mark.asyncio
async def test_candidate_conflicts_block_overlapping_sessions(monkeypatch):
    own = {2: [make_session(90, date(2026, 10, 19), "09:30", "10:30", therapist_id=2)]}
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2)],
        workloads={2: make_workload(2, weekly_hours=10)},
        own_sessions=own,
    )

    result = await find_substitutes(AsyncMock(), _request())

    [candidate] = result.candidates
    assert candidate.recommended_sessions == [2, 3]
    assert [c.conflict_type for c in candidate.scheduling_conflicts] == ["time_overlap"]


@pytest.mark.asyncio
async def test_no_sessions_is_successful_and_empty(monkeypatch):
    _patch_search(monkeypatch, sessions=[], pool=[make_therapist(2)], workloads={})

    result = await find_substitutes(AsyncMock(), _request())

    assert result.success is True
    assert result.candidates == []
    assert result.message == NO_SESSIONS_MESSAGE


@pytest.mark.asyncio
async def test_unreadable_candidate_is_skipped(monkeypatch):
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2), make_therapist(3)],
        workloads={3: make_workload(3, weekly_hours=5)},
    )

    result = await find_substitutes(AsyncMock(), _request())

    assert [c.therapist_id for c in result.candidates] == [3]


# ---------------------------------------------------------------------------
# create_substitution_plan
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_substitute_with_room_for_two_of_three_sessions(monkeypatch, fake_db):
    # 38h of 40h leaves room for two one-hour sessions in that week.
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2)],
        workloads={2: make_workload(2, weekly_hours=38)},
    )

    response = await create_substitution_plan(fake_db, _request())

    plan = response.plan
    assert response.success
    assert plan.status == PlanStatus.DRAFT
    assert plan.assignments[0].assigned_sessions == [1, 2]
    assert len(plan.unassigned_sessions) == 1
    assert plan.unassigned_sessions[0].session_id == 3
    assert plan.disruption_score > 0
    assert plan.coverage_percentage == 66.67
    urgent = [
        n
        for n in plan.notifications
        if n.priority == "high" and n.recipient_type == "parent"
    ]
    assert [n.recipient_id for n in urgent] == [103]
    assert plan.rollback_plan.can_rollback is True
    assert [s.action for s in plan.rollback_plan.rollback_steps] == [
        "undo_assignment",
        "notify_cancellation",
    ]
    fake_db.commit.assert_awaited_once()
    assert fake_db.add.call_count == 2  # plan record + activity log


@pytest.mark.asyncio
async def test_split_assignments_disabled_uses_only_best_candidate(monkeypatch, fake_db):
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2), make_therapist(3)],
        workloads={
            2: make_workload(2, weekly_hours=39),
            3: make_workload(3, weekly_hours=39),
        },
    )

    response = await create_substitution_plan(
        fake_db, _request(allow_split_assignments=False)
    )

    plan = response.plan
    assert len(plan.assignments) == 1
    assert len(plan.unassigned_sessions) == 2


@pytest.mark.asyncio
async def test_selected_substitutes_follow_caller_order(monkeypatch, fake_db):
    _patch_search(
        monkeypatch,
        sessions=_three_sessions(),
        pool=[make_therapist(2), make_therapist(3)],
        workloads={
            2: make_workload(2, weekly_hours=0),
            3: make_workload(3, weekly_hours=39),
        },
    )

    response = await create_substitution_plan(fake_db, _request(), selected_substitutes=[3, 2])

    assignments = response.plan.assignments
    assert [a.substitute_therapist_id for a in assignments] == [3, 2]
    assert assignments[0].assigned_sessions == [1]


@pytest.mark.asyncio
async def test_plan_without_sessions_is_rejected(monkeypatch, fake_db):
    _patch_search(monkeypatch, sessions=[], pool=[], workloads={})

    response = await create_substitution_plan(fake_db, _request())

    assert response.success is False
    assert response.message == NO_SESSIONS_MESSAGE
    fake_db.add.assert_not_called()


def test_rollback_plan_without_assignments_cannot_roll_back():
    plan = build_rollback_plan([], {})
    assert plan.can_rollback is False
    assert plan.rollback_steps == []


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approve_draft_plan(monkeypatch):
    record = _stored_plan(PlanStatus.DRAFT)
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=record)
    )
    db = _db()

    response = await approve_substitution_plan(db, "plan-1")

    assert response.success
    assert response.plan.status == PlanStatus.APPROVED
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_from_draft_fails_without_side_effects(monkeypatch):
    monkeypatch.setattr(
        substitution_service,
        "_load_plan_record",
        AsyncMock(return_value=_stored_plan(PlanStatus.DRAFT)),
    )
    apply = AsyncMock()
    monkeypatch.setattr(substitution_service, "_apply_assignment", apply)
    dispatcher = SimpleNamespace(dispatch=AsyncMock())
    db = _db()

    result = await execute_substitution_plan(db, "plan-1", dispatcher=dispatcher)

    assert result.success is False
    assert "must be approved" in result.message
    assert result.status == PlanStatus.DRAFT
    apply.assert_not_awaited()
    dispatcher.dispatch.assert_not_awaited()
    db.execute.assert_not_awaited()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_continues_past_a_failed_assignment(monkeypatch):
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=_stored_plan())
    )
    monkeypatch.setattr(
        substitution_service,
        "_apply_assignment",
        AsyncMock(side_effect=[None, SessionReassignmentError("moved")]),
    )
    dispatcher = SimpleNamespace(dispatch=AsyncMock())
    db = _db()

    result = await execute_substitution_plan(db, "plan-1", dispatcher=dispatcher)

    assert result.status == PlanStatus.PARTIAL
    assert result.success is True
    assert result.assignments_completed == [5]
    assert [f.therapist_id for f in result.assignments_failed] == [6]
    # the failed substitute is not told about sessions it did not get
    assert result.notifications_sent == [5, 101]
    assert result.rollback_available is True
    assert db.execute.await_count == 2  # approved->in_progress, in_progress->partial


@pytest.mark.asyncio
async def test_execute_skip_notifications(monkeypatch):
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=_stored_plan())
    )
    monkeypatch.setattr(substitution_service, "_apply_assignment", AsyncMock())
    dispatcher = SimpleNamespace(dispatch=AsyncMock())

    result = await execute_substitution_plan(
        _db(), "plan-1", skip_notifications=True, dispatcher=dispatcher
    )

    assert result.status == PlanStatus.COMPLETED
    assert result.notifications_sent == []
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_all_assignments_failing_marks_plan_failed(monkeypatch):
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=_stored_plan())
    )
    monkeypatch.setattr(
        substitution_service,
        "_apply_assignment",
        AsyncMock(side_effect=SessionReassignmentError("moved")),
    )

    result = await execute_substitution_plan(
        _db(), "plan-1", skip_notifications=True
    )

    assert result.status == PlanStatus.FAILED
    assert result.success is False
    assert result.rollback_available is False


@pytest.mark.asyncio
async def test_rollback_after_deadline_writes_nothing(monkeypatch):
    record = _stored_plan(PlanStatus.COMPLETED, deadline=NOW - timedelta(hours=1))
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=record)
    )
    undo = AsyncMock()
    monkeypatch.setattr(substitution_service, "_undo_assignment", undo)
    dispatcher = SimpleNamespace(dispatch=AsyncMock())
    db = _db()

    result = await rollback_substitution(
        db, "plan-1", "therapist returned", now=NOW, dispatcher=dispatcher
    )

    assert result.success is False
    assert result.message == "Rollback deadline has passed"
    undo.assert_not_awaited()
    dispatcher.dispatch.assert_not_awaited()
    db.execute.assert_not_awaited()
    db.commit.assert_not_awaited()
    db.add.assert_not_called()


@pytest.mark.asyncio
async def test_rollback_rejected_when_not_rollbackable(monkeypatch):
    record = _stored_plan(PlanStatus.COMPLETED)
    record.can_rollback = False
    monkeypatch.setattr(
        substitution_service, "_load_plan_record", AsyncMock(return_value=record)
    )
    db = _db()

    result = await rollback_substitution(db, "plan-1", "reason", now=NOW)

    assert result.message == "Substitution plan cannot be rolled back"
    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_rollback_continues_past_reversible_failure(monkeypatch):
    monkeypatch.setattr(
        substitution_service,
        "_load_plan_record",
        AsyncMock(return_value=_stored_plan(PlanStatus.COMPLETED)),
    )
    monkeypatch.setattr(
        substitution_service,
        "_undo_assignment",
        AsyncMock(side_effect=[OperationalError("UPDATE", {}, Exception("lock")), None]),
    )
    dispatcher = SimpleNamespace(dispatch=AsyncMock())
    db = _db()

    result = await rollback_substitution(
        db, "plan-1", "therapist returned", now=NOW, dispatcher=dispatcher
    )

    assert result.success is True
    assert result.final_status == "partial"
    assert [s.step_number for s in result.steps_failed] == [1]
    assert result.steps_completed == [2, 3]
    assert result.notifications_sent == [5, 6]


@pytest.mark.asyncio
async def test_rollback_stops_at_irreversible_failure(monkeypatch):
    monkeypatch.setattr(
        substitution_service,
        "_load_plan_record",
        AsyncMock(return_value=_stored_plan(PlanStatus.COMPLETED)),
    )
    monkeypatch.setattr(substitution_service, "_undo_assignment", AsyncMock())
    dispatcher = SimpleNamespace(
        dispatch=AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
    )

    result = await rollback_substitution(
        _db(), "plan-1", "reason", now=NOW, dispatcher=dispatcher
    )

    assert result.final_status == "partial"
    assert result.steps_completed == [1, 2]
    assert [s.step_number for s in result.steps_failed] == [3]


@pytest.mark.asyncio
async def test_rollback_of_unexecuted_plan_is_a_no_op(monkeypatch):
    monkeypatch.setattr(
        substitution_service,
        "_load_plan_record",
        AsyncMock(return_value=_stored_plan(PlanStatus.APPROVED)),
    )
    undo = AsyncMock()
    monkeypatch.setattr(substitution_service, "_undo_assignment", undo)
    db = _db()

    result = await rollback_substitution(db, "plan-1", "no longer needed", now=NOW)

    assert result.final_status == "complete"
    assert result.steps_completed == [1, 2, 3]
    undo.assert_not_awaited()
    db.commit.assert_awaited_once()
