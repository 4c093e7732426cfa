from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Lab(Base):
    """Tenant. Every lab-owned row carries a lab_id pointing here."""

    __tablename__ = "labs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trn: Mapped[str | None] = mapped_column(String(64), nullable=True)
    logo_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    zoho_client_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    zoho_client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    zoho_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    zoho_org_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    zoho_api_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("module", "action", name="uq_permissions_module_action"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    module: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "process"
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "edit"
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # "process:edit"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list["Role"]] = relationship(secondary="role_permissions", back_populates="permissions", lazy="selectin")


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("lab_id", "name", name="uq_roles_lab_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list["User"]] = relationship(back_populates="role", lazy="selectin")
    permissions: Mapped[list[Permission]] = relationship(
        secondary="role_permissions",
        back_populates="roles",
        lazy="selectin",
    )

    @property
    def is_admin(self) -> bool:
        return self.name == "Admin"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (Index("idx_users_lab_id", "lab_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    role_id: Mapped[int | None] = mapped_column(ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)

    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    designation: Mapped[str | None] = mapped_column(String(128), nullable=True)
    signature_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # JSON list of hidden sidebar entries
    menu_access_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    password_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lab: Mapped[Lab] = relationship(lazy="selectin")
    role: Mapped[Role | None] = relationship(back_populates="users", lazy="selectin")

    @property
    def hidden_menu_items(self) -> list[str]:
        if not self.menu_access_json:
            return []
        try:
            value = json.loads(self.menu_access_json)
        except ValueError:
            return []
        return [str(v) for v in value] if isinstance(value, list) else []


class PortalUser(Base):
    """Customer-facing login. Read-only access to its own customer's records."""

    __tablename__ = "portal_users"
    __table_args__ = (Index("idx_portal_users_customer_id", "customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lab: Mapped[Lab] = relationship(lazy="selectin")
    customer = relationship("Customer", lazy="selectin")


class FormatID(Base):
    """
    Per-(lab, module) document counter.
    last_number is only ever changed through an UPDATE ... SET last_number = last_number + 1.
    """

    __tablename__ = "format_ids"
    __table_args__ = (UniqueConstraint("lab_id", "module", name="uq_format_ids_lab_module"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    module: Mapped[str] = mapped_column(String(64), nullable=False)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AuditLog(Base):
    """
    Append-only audit trail.
    user_name is denormalized so entries survive user deletion.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_lab_created", "lab_id", "created_at"),
        Index("idx_audit_logs_module", "module"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    lab_id: Mapped[int | None] = mapped_column(ForeignKey("labs.id", ondelete="CASCADE"), nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    module: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "process"
    action: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "create"
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.lims.modules.customers.models import ContactPerson, Customer  # noqa: E402,F401
from app.lims.modules.sample_types.models import SampleType  # noqa: E402,F401
from app.lims.modules.samples.models import Registration, Sample, TestResult  # noqa: E402,F401
from app.lims.modules.reports.models import Report, ReportTemplate, ReportVerification  # noqa: E402,F401
from app.lims.modules.accounts.models import (  # noqa: E402,F401
    Contract,
    ContractItem,
    Invoice,
    InvoiceItem,
    Quotation,
    QuotationItem,
)
from app.lims.modules.zoho_sync.models import ZohoSyncRun  # noqa: E402,F401
