import uuid
from datetime import datetime, time

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Time, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.types import GUID


class ProviderAvailability(Base):
    """A declared availability (or unavailability) window for a provider.

    Recurring windows set ``days_of_week`` (0=Monday) with ``start_time`` and
    ``end_time``; one-off windows set ``starts_at`` and ``ends_at``.
    """

    __tablename__ = "provider_availabilities"
    __table_args__ = (
        CheckConstraint(
            "(days_of_week IS NOT NULL AND start_time IS NOT NULL AND end_time IS NOT NULL) "
            "OR (starts_at IS NOT NULL AND ends_at IS NOT NULL)",
            name="ck_availability_recurring_or_one_off",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    days_of_week: Mapped[list | None] = mapped_column(JSON, nullable=True)
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    provider: Mapped["Provider"] = relationship(
        "Provider", back_populates="availabilities", lazy="raise"
    )

    @property
    def is_recurring(self) -> bool:
        return self.days_of_week is not None
