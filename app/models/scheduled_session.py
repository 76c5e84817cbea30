from __future__ import annotations

from datetime import date, time
from enum import StrEnum

from sqlalchemy import Date, ForeignKey, Integer, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base, TimestampMixin, value_enum
from app.models.enrollment import Enrollment
from app.models.room import TherapyRoom
from app.models.therapist import Therapist


class SessionStatus(StrEnum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ScheduledSession(TimestampMixin, Base):
    """Concrete session occurrence belonging to an enrollment.

    Attributes:
        session_date: Calendar date of the session (clinic-local).
        start_time: Clinic-local start time.
        end_time: Clinic-local end time.
        duration_minutes: Planned length; used for workload aggregation.
        therapist_id: Therapist currently delivering the session.
        room_id: Room reserved for the session, if any.
    """

    __tablename__ = "scheduled_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    enrollment_id: Mapped[int] = mapped_column(
        ForeignKey(Enrollment.id), nullable=False, index=True
    )
    enrollment: Mapped[Enrollment] = relationship(Enrollment)
    student_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    therapist_id: Mapped[int | None] = mapped_column(
        ForeignKey(Therapist.id), nullable=True, index=True
    )
    room_id: Mapped[int | None] = mapped_column(
        ForeignKey(TherapyRoom.id), nullable=True, index=True
    )

    session_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=45)

    status: Mapped[SessionStatus] = mapped_column(
        value_enum(SessionStatus, "session_status"),
        nullable=False,
        default=SessionStatus.SCHEDULED,
        index=True,
    )
