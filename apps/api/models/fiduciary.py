import enum
import uuid

from sqlalchemy import Boolean, DateTime, Enum, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class FiduciaryLifecycleState(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISABLED = "disabled"


class DataFiduciary(Base):
    """Organization that processes personal data and requests consent for it."""

    __tablename__ = "data_fiduciaries"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    rate_limit_per_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    lifecycle_state: Mapped[FiduciaryLifecycleState] = mapped_column(
        Enum(
            FiduciaryLifecycleState,
            name="fiduciarylifecyclestate",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=FiduciaryLifecycleState.ACTIVE,
        server_default=FiduciaryLifecycleState.ACTIVE.value,
    )
    created_at: Mapped["DateTime"] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def can_write(self) -> bool:
        lifecycle = self.lifecycle_state
        lifecycle_active = lifecycle in (None, FiduciaryLifecycleState.ACTIVE, FiduciaryLifecycleState.ACTIVE.value)
        return bool(self.is_active) and lifecycle_active
