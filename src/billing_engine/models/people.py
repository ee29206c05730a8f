"""Staff and client models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import RATE, Base, TimestampMixin, status_enum
from billing_engine.models.enums import LeadSource, SplitRole


class StaffUser(Base, TimestampMixin):
    """A coach, closer, setter or admin who can earn commission."""

    __tablename__ = "staff_user"

    staff_user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="coach")
    commission_rate: Mapped[Decimal | None] = mapped_column(RATE, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 1)",
            name="staff_user_commission_rate_check",
        ),
    )


class Client(Base, TimestampMixin):
    """A coaching client and the staff currently credited for them."""

    __tablename__ = "client"

    client_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    lead_source: Mapped[LeadSource] = mapped_column(
        status_enum(LeadSource, "client_lead_source"),
        nullable=False,
        default=LeadSource.COACH_DRIVEN,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_resign: Mapped[bool] = mapped_column(default=False, nullable=False)
    assigned_coach_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("staff_user.staff_user_id", ondelete="SET NULL"), nullable=True
    )
    closer_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("staff_user.staff_user_id", ondelete="SET NULL"), nullable=True
    )
    setter_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("staff_user.staff_user_id", ondelete="SET NULL"), nullable=True
    )

    def staff_for_role(self, role: SplitRole) -> UUID | None:
        """Staff member currently holding a split role for this client."""
        if role == SplitRole.COACH:
            return self.assigned_coach_id
        if role == SplitRole.CLOSER:
            return self.closer_id
        return self.setter_id
