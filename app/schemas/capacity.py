from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PriorityLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OptimizationStrategy(StrEnum):
    MINIMIZE_WORKLOAD_VARIANCE = "minimize_workload_variance"
    MAXIMIZE_COMPATIBILITY = "maximize_compatibility"
    OPTIMIZE_UTILIZATION = "optimize_utilization"
    BALANCE_ALL = "balance_all"


class TimeSlot(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str


class AssignmentRequest(BaseModel):
    """Proposed therapist/student assignment submitted for validation.

    Non-positive ``sessions_per_week`` or ``session_duration_minutes`` are
    accepted here and reported as a critical validation error.
    """

    therapist_id: int
    student_id: int
    program_template_id: int
    sessions_per_week: int
    session_duration_minutes: int
    start_date: date
    end_date: date | None = None
    preferred_time_slots: list[TimeSlot] = []
    priority_level: PriorityLevel = PriorityLevel.MEDIUM
    required_specialties: list[str] = []


class ValidationIssue(BaseModel):
    """A single capacity violation.

    Attributes:
        error_code: Stable machine-readable code (e.g. ``"WEEKLY_HOURS_EXCEEDED"``).
        affected_constraint: Name of the capacity dimension that was checked.
        current_value: Projected value of that dimension.
        maximum_allowed: Configured maximum of that dimension.
    """

    error_code: str
    severity: Severity
    message_ar: str
    message_en: str
    affected_constraint: str
    current_value: float
    maximum_allowed: float


class CapacityImpact(BaseModel):
    current_utilization: float
    projected_utilization: float
    capacity_remaining: float
    risk_level: RiskLevel


class ImplementationStep(BaseModel):
    step_number: int
    action_ar: str
    action_en: str
    estimated_time_minutes: int
    requires_approval: bool = False


class CapacityRecommendation(BaseModel):
    type: str
    priority: int
    description_ar: str
    description_en: str
    implementation_steps: list[ImplementationStep] = []
    expected_impact: float = 0


class AlternativeAssignment(BaseModel):
    """Another therapist that passes validation for the same request.

    ``has_warnings`` marks candidates that pass only with warning-level
    findings; they are ranked below clean candidates.
    """

    therapist_id: int
    therapist_name_ar: str | None = None
    therapist_name_en: str | None = None
    compatibility_score: float
    capacity_utilization: float
    projected_utilization: float
    schedule_flexibility: float
    has_warnings: bool = False
    recommended_time_slots: list[TimeSlot] = []
    adjustment_requirements: list[str] = []


class CapacityValidationResult(BaseModel):
    is_valid: bool
    validation_errors: list[ValidationIssue]
    capacity_impact: CapacityImpact
    recommendations: list[CapacityRecommendation] = []
    alternative_assignments: list[AlternativeAssignment] = []


class CapacityValidationResponse(BaseModel):
    success: bool
    result: CapacityValidationResult | None = None
    message: str | None = None


class OverAssignmentCheck(BaseModel):
    allowed: bool
    prevention_reason: str | None = None
    alternatives: list[AlternativeAssignment] = []


class BulkAssignmentRequest(BaseModel):
    assignments: list[AssignmentRequest]
    optimization_strategy: OptimizationStrategy = OptimizationStrategy.BALANCE_ALL
    allow_partial_assignments: bool = True
    max_processing_time_seconds: float = Field(default=30, gt=0)


class SuccessfulAssignment(BaseModel):
    student_id: int
    therapist_id: int
    enrollment_id: int | None = None
    used_alternative: bool = False


class FailedAssignment(BaseModel):
    student_id: int
    therapist_id: int
    reason: str
    alternative_options: list[AlternativeAssignment] = []


class NotProcessedAssignment(BaseModel):
    student_id: int
    therapist_id: int
    reason: str = "time_budget_exceeded"


class OptimizationSummary(BaseModel):
    """Counters for a bulk run.

    ``total_processed`` counts attempted requests only; requests skipped
    because the time budget ran out are reported under ``not_processed``.
    """

    total_requested: int
    total_processed: int
    successful_count: int
    failed_count: int
    not_processed_count: int
    optimization_score: float
    processing_time_seconds: float
    timed_out: bool = False


class CapacityImpactSummary(BaseModel):
    average_utilization_change: float
    peak_utilization_change: float
    therapists_at_capacity: list[int] = []
    warnings_generated: int = 0


class BulkAssignmentResult(BaseModel):
    successful_assignments: list[SuccessfulAssignment]
    failed_assignments: list[FailedAssignment]
    not_processed: list[NotProcessedAssignment]
    optimization_summary: OptimizationSummary
    capacity_impact_summary: CapacityImpactSummary
    recommendations: list[CapacityRecommendation] = []


class CapacityAlert(BaseModel):
    alert_id: str
    therapist_id: int
    alert_type: str
    severity: RiskLevel
    utilization_percentage: float
    message_ar: str
    message_en: str
    triggered_at: datetime
    requires_immediate_action: bool
    recommended_actions: list[str] = []
    auto_resolution_available: bool = False


class CapacityAlertSweep(BaseModel):
    success: bool
    alerts: list[CapacityAlert] = []
    therapists_checked: int = 0
    message: str | None = None
