from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.lims.models import Base


class Registration(Base):
    """
    One registration sheet: a customer's delivery of one or more samples.
    Sample numbers are derived from registration_number (REG-YYMMDD-NNN-A01).
    """

    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("lab_id", "registration_number", name="uq_registrations_lab_number"),
        Index("idx_registrations_lab_registered_at", "lab_id", "registered_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)

    registration_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)

    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="testing")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    collection_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    collection_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    sample_condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    sampling_method: Mapped[str] = mapped_column(String(16), nullable=False, default="NP")
    sheet_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    collected_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    registered_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer = relationship("Customer", lazy="selectin")
    collected_by = relationship("User", foreign_keys=[collected_by_id], lazy="selectin")
    registered_by = relationship("User", foreign_keys=[registered_by_id], lazy="selectin")
    samples: Mapped[list["Sample"]] = relationship(
        "Sample",
        back_populates="registration",
        lazy="selectin",
        order_by="Sample.sub_sample_number",
    )

    @property
    def live_samples(self) -> list["Sample"]:
        return [smp for smp in self.samples if smp.deleted_at is None]


class Sample(Base):
    __tablename__ = "samples"
    __table_args__ = (
        UniqueConstraint("lab_id", "sample_number", name="uq_samples_lab_number"),
        Index("idx_samples_lab_status", "lab_id", "status"),
        Index("idx_samples_customer_id", "customer_id"),
        Index("idx_samples_registration_id", "registration_id"),
        Index("idx_samples_assigned_to_id", "assigned_to_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)

    sample_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    registration_id: Mapped[int | None] = mapped_column(ForeignKey("registrations.id", ondelete="SET NULL"), nullable=True)
    sub_sample_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sample_group: Mapped[str | None] = mapped_column(String(4), nullable=True)  # A, B, C...

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    sample_type_id: Mapped[int] = mapped_column(ForeignKey("sample_types.id"), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[str | None] = mapped_column(String(64), nullable=True)  # bottle qty, e.g. "1L x 2"
    sample_condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="testing")
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    collected_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    registered_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    collection_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    collection_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    sample_point: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    registration: Mapped[Registration | None] = relationship("Registration", back_populates="samples", lazy="selectin")
    customer = relationship("Customer", lazy="selectin")
    sample_type = relationship("SampleType", lazy="selectin")
    assigned_to = relationship("User", foreign_keys=[assigned_to_id], lazy="selectin")
    collected_by = relationship("User", foreign_keys=[collected_by_id], lazy="selectin")
    registered_by = relationship("User", foreign_keys=[registered_by_id], lazy="selectin")
    deleted_by = relationship("User", foreign_keys=[deleted_by_id], lazy="selectin")
    test_results: Mapped[list["TestResult"]] = relationship(
        "TestResult",
        back_populates="sample",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TestResult.id",
    )
    reports = relationship("Report", back_populates="sample", lazy="selectin", order_by="Report.id")

    @property
    def pending_count(self) -> int:
        return sum(1 for t in self.test_results if t.status == "pending")

    @property
    def earliest_due_date(self) -> datetime | None:
        dues = [t.due_date for t in self.test_results if t.due_date is not None]
        return min(dues) if dues else None


class TestResult(Base):
    __tablename__ = "test_results"
    __table_args__ = (
        Index("idx_test_results_sample_id", "sample_id"),
        Index("idx_test_results_status", "status"),
    )
    # keeps pytest from collecting the model as a test class
    __test__ = False

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sample_id: Mapped[int] = mapped_column(ForeignKey("samples.id", ondelete="CASCADE"), nullable=False)

    parameter: Mapped[str] = mapped_column(Text, nullable=False)
    test_method: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    spec_min: Mapped[str | None] = mapped_column(String(64), nullable=True)
    spec_max: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    tat: Mapped[int | None] = mapped_column(Integer, nullable=True)  # days
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    entered_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    entered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    sample: Mapped[Sample] = relationship("Sample", back_populates="test_results", lazy="selectin")
    entered_by = relationship("User", foreign_keys=[entered_by_id], lazy="selectin")

    @property
    def within_spec(self) -> bool | None:
        """None when the value or both limits are not numeric."""
        try:
            value = float(self.result_value or "")
        except ValueError:
            return None
        checked = False
        for limit, ok in ((self.spec_min, lambda lo: value >= lo), (self.spec_max, lambda hi: value <= hi)):
            try:
                bound = float(limit or "")
            except ValueError:
                continue
            checked = True
            if not ok(bound):
                return False
        return True if checked else None
