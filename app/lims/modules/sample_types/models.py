from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.lims.models import Base


class SampleType(Base):
    __tablename__ = "sample_types"
    __table_args__ = (Index("idx_sample_types_lab_name", "lab_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    specification_standard: Mapped[str | None] = mapped_column(Text, nullable=True)  # e.g. "ASTM D975"
    # JSON array: [{"parameter", "method", "unit", "specMin", "specMax", "tat"}, ...]
    default_tests: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def tests(self) -> list[dict[str, Any]]:
        """Parsed default_tests; malformed JSON reads as no tests."""
        try:
            value = json.loads(self.default_tests or "[]")
        except ValueError:
            return []
        return [t for t in value if isinstance(t, dict)] if isinstance(value, list) else []
