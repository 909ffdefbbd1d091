"""CoffeeGrower: the farm owner who pays for a subscription.

Grower profiles are managed by the grower module; billing only reads
them to validate references and to label payments in listings.
A grower with ``deleted_at`` set is treated as missing.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from cafetal.database import Base


class CoffeeGrower(Base):
    __tablename__ = "coffee_growers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    identification_number: Mapped[str | None] = mapped_column(String(50), unique=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
