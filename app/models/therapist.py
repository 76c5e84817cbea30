from __future__ import annotations

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base, TimestampMixin


class Therapist(TimestampMixin, Base):
    """Therapist entity with specialties and substitution eligibility.

    Therapist records are maintained by admin workflows outside the scheduling
    engine; the engine only reads them.
    """

    __tablename__ = "therapists"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    full_name_ar: Mapped[str | None] = mapped_column(String(255), nullable=True)
    full_name_en: Mapped[str | None] = mapped_column(String(255), nullable=True)
    specialties: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", index=True
    )
    substitute_eligible: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )

    capacity: Mapped["TherapistCapacity | None"] = relationship(
        "TherapistCapacity", back_populates="therapist", uselist=False
    )


class TherapistCapacity(TimestampMixin, Base):
    """Capacity configuration for a single therapist.

    Attributes:
        therapist_id: Owning therapist (one row per therapist).
        max_daily_hours: Maximum scheduled hours on a working day.
        max_weekly_hours: Maximum scheduled hours in an ISO week.
        max_monthly_hours: Maximum scheduled hours in a calendar month.
        max_concurrent_students: Maximum number of students on the caseload.
        max_sessions_per_day: Maximum number of sessions on a working day.
        required_break_minutes: Minimum break between consecutive sessions.
        max_consecutive_hours: Maximum uninterrupted therapy hours.
        specialty_requirements: Specialties every new assignment must match.
        availability_windows: Weekly windows as
            ``{"day_of_week": 0-6, "start_time": "HH:MM", "end_time": "HH:MM"}``.
    """

    __tablename__ = "therapist_capacities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    therapist_id: Mapped[int] = mapped_column(
        ForeignKey(Therapist.id), nullable=False, unique=True, index=True
    )
    therapist: Mapped[Therapist] = relationship(Therapist, back_populates="capacity")

    max_daily_hours: Mapped[float] = mapped_column(
        Numeric(5, 2, asdecimal=False), nullable=False, default=8, server_default="8"
    )
    max_weekly_hours: Mapped[float] = mapped_column(
        Numeric(5, 2, asdecimal=False), nullable=False, default=40, server_default="40"
    )
    max_monthly_hours: Mapped[float] = mapped_column(
        Numeric(6, 2, asdecimal=False), nullable=False, default=160, server_default="160"
    )
    max_concurrent_students: Mapped[int] = mapped_column(
        Integer, nullable=False, default=25, server_default="25"
    )
    max_sessions_per_day: Mapped[int] = mapped_column(
        Integer, nullable=False, default=8, server_default="8"
    )
    required_break_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=15, server_default="15"
    )
    max_consecutive_hours: Mapped[float] = mapped_column(
        Numeric(4, 2, asdecimal=False), nullable=False, default=4, server_default="4"
    )
    specialty_requirements: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    availability_windows: Mapped[list[dict]] = mapped_column(
        JSON, nullable=False, default=list
    )
