from __future__ import annotations

from datetime import date
from enum import StrEnum

from sqlalchemy import JSON, Date, ForeignKey, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base, TimestampMixin, value_enum
from app.models.room import TherapyRoom
from app.models.therapist import Therapist


class EnrollmentStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class Enrollment(TimestampMixin, Base):
    """Student enrollment in a therapy program.

    ``assigned_therapist_id`` is nullable: an enrollment can exist before a
    therapist has been assigned.
    """

    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    program_template_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    assigned_therapist_id: Mapped[int | None] = mapped_column(
        ForeignKey(Therapist.id), nullable=True, index=True
    )
    assigned_therapist: Mapped[Therapist | None] = relationship(Therapist)

    frequency_per_week: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    session_duration_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=45
    )
    session_rate: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[EnrollmentStatus] = mapped_column(
        value_enum(EnrollmentStatus, "enrollment_status"),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
        index=True,
    )

    preferred_room_id: Mapped[int | None] = mapped_column(
        ForeignKey(TherapyRoom.id), nullable=True
    )
    service_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
