from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field


class AvailabilityWindow(BaseModel):
    """Weekly availability window (``day_of_week`` 0 = Sunday)."""

    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str


class CapacityLimits(BaseModel):
    """Capacity configuration of a therapist.

    Built from a ``TherapistCapacity`` row; a therapist without a row uses the
    defaults declared here.
    """

    max_daily_hours: float = 8
    max_weekly_hours: float = 40
    max_monthly_hours: float = 160
    max_concurrent_students: int = 25
    max_sessions_per_day: int = 8
    required_break_minutes: int = 15
    max_consecutive_hours: float = 4
    specialty_requirements: list[str] = []
    availability_windows: list[AvailabilityWindow] = []

    model_config = {"from_attributes": True}


class WorkloadMetrics(BaseModel):
    """Point-in-time workload of a therapist.

    Attributes:
        weekly_hours: Direct therapy hours plus documentation and travel time
            in the ISO week containing ``as_of``.
        daily_hours_avg: ``weekly_hours`` spread over the working days.
        active_students: Distinct students on active enrollments.
        utilization_percentage: ``weekly_hours / max_weekly_hours * 100``.
        sessions_per_week: Non-cancelled sessions in the week.
        sessions_per_day_avg: Sessions spread over the working days.
        peak_sessions_per_day: Busiest day of the week.
        capacity_remaining_hours: Weekly hours left before the maximum.
        student_ids: Students currently on the caseload.
    """

    therapist_id: int
    as_of: date
    weekly_hours: float
    daily_hours_avg: float
    active_students: int
    utilization_percentage: float
    sessions_per_week: int
    sessions_per_day_avg: float
    peak_sessions_per_day: int
    documentation_hours: float
    travel_time_hours: float
    direct_hours: float
    monthly_hours: float
    capacity_remaining_hours: float
    student_ids: list[int] = []


class TherapistWorkload(BaseModel):
    """Workload together with the limits it was measured against."""

    therapist_id: int
    full_name_ar: str | None = None
    full_name_en: str | None = None
    specialties: list[str] = []
    limits: CapacityLimits
    metrics: WorkloadMetrics


class BulkWorkloadItem(BaseModel):
    therapist_id: int
    success: bool
    workload: WorkloadMetrics | None = None
    error_message: str | None = None


class BulkWorkloadSummary(BaseModel):
    total_processed: int
    successful: int
    failed: int
    average_utilization: float
    over_capacity_count: int


class BulkWorkloadResult(BaseModel):
    results: list[BulkWorkloadItem]
    summary: BulkWorkloadSummary


class BulkWorkloadRequest(BaseModel):
    therapist_ids: list[int] = Field(min_length=1)
    as_of: date | None = None
