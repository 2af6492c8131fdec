import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import ProviderKind
from app.models.types import GUID


@dataclass(frozen=True)
class StudioRef:
    id: uuid.UUID
    kind: ClassVar[ProviderKind] = ProviderKind.STUDIO


@dataclass(frozen=True)
class ArtistRef:
    id: uuid.UUID
    kind: ClassVar[ProviderKind] = ProviderKind.ARTIST


ProviderRef = StudioRef | ArtistRef


def provider_ref(kind: ProviderKind | str, provider_id: uuid.UUID) -> ProviderRef:
    """Build the tagged provider reference from its stored discriminator."""
    kind = ProviderKind(kind)
    if kind == ProviderKind.STUDIO:
        return StudioRef(provider_id)
    return ArtistRef(provider_id)


class Provider(Base):
    """A bookable studio or artist, owned by one user.

    ``services`` holds the published catalogue as a JSON list of
    ``{name, price, category, description, duration_mins}`` and ``equipment``
    a list of ``{name, rental_price}``. Prices in JSON are decimal strings.
    """

    __tablename__ = "providers"
    __table_args__ = (
        CheckConstraint("hourly_rate >= 0", name="ck_provider_hourly_rate_positive"),
        CheckConstraint("kind IN ('studio', 'artist')", name="ck_provider_kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    kind: Mapped[ProviderKind] = mapped_column(String(10), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")
    services: Mapped[list | None] = mapped_column(JSON, nullable=True)
    equipment: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship("User", lazy="raise")
    availabilities: Mapped[list["ProviderAvailability"]] = relationship(
        "ProviderAvailability", back_populates="provider", lazy="raise"
    )

    @property
    def ref(self) -> ProviderRef:
        return provider_ref(self.kind, self.id)

    def find_service(self, name: str) -> dict | None:
        for service in self.services or []:
            if service.get("name") == name:
                return service
        return None

    def find_equipment(self, name: str) -> dict | None:
        for item in self.equipment or []:
            if item.get("name") == name:
                return item
        return None
