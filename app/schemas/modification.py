from __future__ import annotations

from datetime import date, time
from enum import StrEnum

from pydantic import BaseModel


class ModificationType(StrEnum):
    FREQUENCY_CHANGE = "frequency_change"
    DURATION_CHANGE = "duration_change"
    THERAPIST_CHANGE = "therapist_change"
    LOCATION_CHANGE = "location_change"
    SERVICE_TYPE_CHANGE = "service_type_change"


class ImpactSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProposedChanges(BaseModel):
    new_frequency: int | None = None
    new_duration: int | None = None
    new_therapist_id: int | None = None
    new_location_id: int | None = None
    new_service_types: list[str] = []


class ModificationRequest(BaseModel):
    """Proposed change to an active enrollment.

    ``analysis_scope`` is kept as a plain string: values other than
    ``immediate``, ``short_term``, ``long_term`` and ``all`` are analyzed as
    ``all``. Required fields are optional here so that
    :func:`validate_modification_request` can report every problem at once.
    """

    enrollment_id: int | None = None
    modification_types: list[ModificationType] = []
    proposed_changes: ProposedChanges = ProposedChanges()
    effective_date: date | None = None
    analysis_scope: str = "all"
    include_alternatives: bool = False


class ModificationValidation(BaseModel):
    valid: bool
    errors: list[str] = []


class AffectedSession(BaseModel):
    session_id: int
    session_date: date
    start_time: time
    end_time: time
    therapist_id: int | None = None
    room_id: int | None = None
    status: str


class HorizonImpact(BaseModel):
    """Impact of the modification within one analysis horizon.

    Attributes:
        horizon: ``immediate`` (7 days), ``short_term`` (30) or ``long_term`` (90).
        session_count: Sessions of the enrollment inside the horizon.
        affected_session_count: Sessions touched by at least one modification type.
        schedule_disruption_percentage: ``affected / total`` as a 0..1 fraction.
        estimated_adjustment_hours: Rough operator effort, whole hours.
    """

    horizon: str
    days: int
    session_count: int
    affected_session_count: int
    schedule_disruption_percentage: float
    overall_severity: ImpactSeverity
    estimated_adjustment_hours: int


class TimelineImpact(BaseModel):
    immediate: HorizonImpact
    short_term: HorizonImpact
    long_term: HorizonImpact


class TimeSlotRef(BaseModel):
    session_date: date
    start_time: time
    end_time: time


class TherapistImpact(BaseModel):
    therapist_id: int
    role: str
    current_workload: int
    workload_change: int
    new_projected_workload: int
    impact_severity: ImpactSeverity
    adjustment_required: bool
    affected_time_slots: list[TimeSlotRef] = []


class ScheduleAdjustment(BaseModel):
    """Typed adjustment produced per modification kind.

    For ``frequency_change`` either ``excess_session_ids`` (sessions to drop)
    or ``deficit_session_count`` (sessions to add) is populated.
    """

    adjustment_type: ModificationType
    original_value: str
    new_value: str
    affected_session_ids: list[int] = []
    implementation_date: date
    estimated_completion_hours: float
    requires_approval: bool
    impact_severity: ImpactSeverity
    excess_session_ids: list[int] = []
    deficit_session_count: int = 0


class ResourceReallocation(BaseModel):
    resource_type: str
    resource_id: int
    current_allocation: int
    required_reallocation: int
    impact_severity: ImpactSeverity
    alternative_resources: list[int] = []
    reallocation_timeline_hours: int


class CostImplications(BaseModel):
    additional_costs: float
    cost_savings: float
    net_impact: float


class ModificationRecommendations(BaseModel):
    priority: ImpactSeverity
    actions: list[str] = []
    alternatives: list[str] = []
    risks: list[str] = []


class ImpactAnalysisResult(BaseModel):
    modification_id: str
    enrollment_id: int
    modification_types: list[ModificationType]
    analysis_scope: str
    overall_severity: ImpactSeverity
    weighted_impact: float
    affected_sessions: list[AffectedSession] = []
    affected_therapist_count: int = 0
    cost_implications: CostImplications
    timeline_impact: TimelineImpact
    therapist_impacts: list[TherapistImpact] = []
    schedule_adjustments: list[ScheduleAdjustment] = []
    resource_reallocations: list[ResourceReallocation] = []
    stakeholder_notifications_required: list[str]
    recommendations: ModificationRecommendations


class ImpactAnalysisResponse(BaseModel):
    success: bool
    data: ImpactAnalysisResult | None = None
    error: str | None = None
