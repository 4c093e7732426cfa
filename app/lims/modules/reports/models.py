from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.lims.models import Base


class ReportTemplate(Base):
    __tablename__ = "report_templates"
    __table_args__ = (Index("idx_report_templates_lab_id", "lab_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    header_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    footer_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    accreditation_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    logo_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    accreditation_logo_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    seal_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    show_lab_logo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Report(Base):
    """
    Certificate for one sample.
    Workflow: draft -> review -> approved -> published, with review -> revision -> review.
    """

    __tablename__ = "reports"
    __table_args__ = (
        UniqueConstraint("lab_id", "report_number", name="uq_reports_lab_number"),
        Index("idx_reports_lab_status", "lab_id", "status"),
        Index("idx_reports_sample_id", "sample_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)

    report_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sample_id: Mapped[int] = mapped_column(ForeignKey("samples.id", ondelete="CASCADE"), nullable=False)
    template_id: Mapped[int | None] = mapped_column(ForeignKey("report_templates.id", ondelete="SET NULL"), nullable=True)
    report_type: Mapped[str] = mapped_column(String(32), nullable=False, default="coa")
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")

    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    sample = relationship("Sample", back_populates="reports", lazy="selectin")
    template: Mapped[ReportTemplate | None] = relationship("ReportTemplate", lazy="selectin")
    created_by = relationship("User", foreign_keys=[created_by_id], lazy="selectin")
    reviewed_by = relationship("User", foreign_keys=[reviewed_by_id], lazy="selectin")
    deleted_by = relationship("User", foreign_keys=[deleted_by_id], lazy="selectin")
    verifications: Mapped[list["ReportVerification"]] = relationship(
        "ReportVerification",
        back_populates="report",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ReportVerification(Base):
    """
    Snapshot taken when a COA is first issued. Backs the public /verify/<code> page,
    so the fields are copied rather than joined.
    """

    __tablename__ = "report_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    report_id: Mapped[int] = mapped_column(ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    report_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sample_number: Mapped[str] = mapped_column(String(64), nullable=False)
    client_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    sample_type_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    test_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lab_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_by_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    report: Mapped[Report] = relationship("Report", back_populates="verifications", lazy="selectin")
