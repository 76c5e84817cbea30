from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from app.models.substitution_plan import PlanStatus


class SubstitutionReason(StrEnum):
    VACATION = "vacation"
    SICK_LEAVE = "sick_leave"
    EMERGENCY = "emergency"
    TRAINING = "training"
    OTHER = "other"


class SubstitutionRequest(BaseModel):
    """Request to cover the sessions of an absent therapist.

    ``affected_session_ids`` narrows the search to specific sessions; when
    empty, all still-scheduled sessions of the original therapist in
    ``[start_date, end_date]`` are affected; completed, cancelled and no-show
    sessions never move.
    """

    original_therapist_id: int
    start_date: date
    end_date: date
    reason: SubstitutionReason = SubstitutionReason.OTHER
    reason_details: str | None = None
    affected_session_ids: list[int] = []
    require_same_specialty: bool = False
    allow_split_assignments: bool = True


class ResolutionOption(BaseModel):
    option_type: str
    description_ar: str
    description_en: str
    impact_score: float
    requires_approval: bool = True


class SchedulingConflict(BaseModel):
    session_id: int
    conflict_type: str
    conflict_description_ar: str
    conflict_description_en: str
    resolution_options: list[ResolutionOption] = []


class SubstitutionCandidate(BaseModel):
    """Scored substitute therapist.

    Attributes:
        availability_score: ``100 - utilization``, clamped to 0..100.
        compatibility_score: Specialty-weighted fit, 0..100.
        workload_impact: Strain the affected sessions put on the candidate,
            0..100 (higher is worse).
        capacity_available: Weekly hours left before the candidate's maximum.
        recommended_sessions: Affected session ids the candidate can take
            without exceeding capacity or overlapping its own sessions.
    """

    therapist_id: int
    therapist_name_ar: str | None = None
    therapist_name_en: str | None = None
    availability_score: float
    compatibility_score: float
    workload_impact: float
    specialties_match: bool
    current_utilization: float = 0
    capacity_available: float = 0
    recommended_sessions: list[int] = []
    scheduling_conflicts: list[SchedulingConflict] = []


class SubstitutionSearchResult(BaseModel):
    success: bool
    candidates: list[SubstitutionCandidate] = []
    affected_session_ids: list[int] = []
    message: str | None = None


class TherapistAssignment(BaseModel):
    substitute_therapist_id: int
    substitute_name_ar: str | None = None
    substitute_name_en: str | None = None
    assigned_sessions: list[int]
    capacity_impact: float
    requires_training: bool = False


class AlternativeOption(BaseModel):
    option_type: str
    description_ar: str
    description_en: str
    availability: bool = True
    requirements: list[str] = []


class UnassignedSession(BaseModel):
    session_id: int
    student_id: int
    session_date: date
    session_time: str
    reason_unassigned: str
    alternative_options: list[AlternativeOption] = []


class NotificationPlan(BaseModel):
    recipient_type: str
    recipient_id: int
    notification_type: str
    message_template_ar: str
    message_template_en: str
    send_time: datetime
    priority: str
    requires_confirmation: bool = False


class RollbackStep(BaseModel):
    """Ordered rollback action.

    ``substitute_therapist_id`` is set on steps that undo one substitute's
    session reassignments.
    """

    step_number: int
    action: str
    action_ar: str
    action_en: str
    estimated_time_minutes: int
    reversible: bool
    substitute_therapist_id: int | None = None


class RollbackPlan(BaseModel):
    can_rollback: bool
    rollback_deadline: datetime | None = None
    rollback_steps: list[RollbackStep] = []
    impact_assessment: str
    approval_required: bool = False


class SubstitutionPlan(BaseModel):
    plan_id: str
    original_therapist_id: int
    status: PlanStatus = PlanStatus.DRAFT
    start_date: date
    end_date: date
    reason: SubstitutionReason
    total_sessions_affected: int
    coverage_percentage: float
    disruption_score: float = Field(ge=0, le=100)
    assignments: list[TherapistAssignment] = []
    unassigned_sessions: list[UnassignedSession] = []
    notifications: list[NotificationPlan] = []
    rollback_plan: RollbackPlan
    created_at: datetime | None = None


class SubstitutionPlanResponse(BaseModel):
    success: bool
    plan: SubstitutionPlan | None = None
    message: str | None = None


class FailedItem(BaseModel):
    therapist_id: int
    reason: str


class FailedNotification(BaseModel):
    recipient_id: int
    reason: str


class ExecutionResult(BaseModel):
    success: bool
    plan_id: str
    status: PlanStatus | None = None
    assignments_completed: list[int] = []
    assignments_failed: list[FailedItem] = []
    notifications_sent: list[int] = []
    notifications_failed: list[FailedNotification] = []
    rollback_available: bool = False
    message: str | None = None


class RollbackRequest(BaseModel):
    reason: str = Field(min_length=1)


class FailedStep(BaseModel):
    step_number: int
    reason: str


class RollbackResult(BaseModel):
    """Outcome of a rollback attempt.

    ``final_status`` is ``"complete"`` only when every step succeeded; a
    ``"partial"`` rollback needs manual reconciliation.
    """

    success: bool
    plan_id: str
    steps_completed: list[int] = []
    steps_failed: list[FailedStep] = []
    notifications_sent: list[int] = []
    final_status: str | None = None
    message: str | None = None


class ActiveSubstitution(BaseModel):
    plan_id: str
    original_therapist_id: int
    status: PlanStatus
    start_date: date
    end_date: date
    rollback_deadline: datetime | None = None
    can_rollback: bool


class CreatePlanRequest(BaseModel):
    request: SubstitutionRequest
    selected_substitutes: list[int] = []


class ExecutePlanRequest(BaseModel):
    skip_notifications: bool = False
