"""
Administration services: staff users, roles and the permission matrix,
portal users, lab settings, uploads and tenant seeding.
"""
from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.lims.audit import record_event
from app.lims.constants import (
    MENU_ITEMS,
    PERMISSION_ACTIONS,
    PERMISSION_MODULES,
    SYSTEM_ROLES,
    UPLOAD_CONTENT_TYPES,
    UPLOAD_FOLDERS,
)
from app.lims.db import get_scoped
from app.lims.models import AuditLog, Lab, Permission, PortalUser, Role, User
from app.lims.modules.customers.models import Customer
from app.lims.numbering import ensure_format_ids
from app.lims.storage import Storage, is_lab_key, lab_key

MIN_PASSWORD_LENGTH = 8
_USERNAME_RE = re.compile(r"^[a-z0-9._-]{3,64}$")


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def normalize_username(raw: Any) -> str:
    username = (str(raw or "")).strip().lower()
    if not _USERNAME_RE.match(username):
        raise ValueError("Username must be 3-64 characters: letters, digits, dot, dash or underscore.")
    return username


def check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


# ---------- Permissions & roles ----------


def ensure_permissions(s: Session) -> dict[str, Permission]:
    """Create the global module x action permission rows (idempotent)."""
    existing = {p.key: p for p in s.query(Permission).all()}
    for module in PERMISSION_MODULES:
        for action in PERMISSION_ACTIONS:
            key = f"{module}:{action}"
            if key not in existing:
                p = Permission(module=module, action=action, key=key, name=f"{module.title()} {action.title()}")
                s.add(p)
                existing[key] = p
    s.flush()
    return existing


def _permissions_for(s: Session, keys: list[str]) -> list[Permission]:
    perms = ensure_permissions(s)
    unknown = [k for k in keys if k not in perms]
    if unknown:
        raise ValueError(f"Unknown permission(s): {', '.join(sorted(unknown))}")
    return [perms[k] for k in dict.fromkeys(keys)]


def ensure_system_roles(s: Session, lab_id: int) -> dict[str, Role]:
    perms = ensure_permissions(s)
    roles = {r.name: r for r in s.query(Role).filter(Role.lab_id == lab_id).all()}
    for name, (description, keys) in SYSTEM_ROLES.items():
        role = roles.get(name)
        if role is None:
            role = Role(lab_id=lab_id, name=name, description=description, is_system=True)
            s.add(role)
            roles[name] = role
        role.is_system = True
        role.permissions = [perms[k] for k in keys]
    s.flush()
    return roles


def list_roles(s: Session, lab_id: int) -> list[Role]:
    return s.query(Role).filter(Role.lab_id == lab_id).order_by(Role.is_system.desc(), Role.name.asc()).all()


def create_role(s: Session, payload: dict[str, Any], permission_keys: list[str], *, actor: User) -> Role:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Role name is required.")
    if s.query(Role.id).filter(Role.lab_id == actor.lab_id, func.lower(Role.name) == name.lower()).first():
        raise ValueError(f"A role named {name} already exists.")
    role = Role(lab_id=actor.lab_id, name=name, description=_clean(payload.get("description")), is_system=False)
    role.permissions = _permissions_for(s, permission_keys)
    s.add(role)
    s.flush()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="create",
        details=f"Created role {name}",
        entity_type="Role",
        entity_id=role.id,
        metadata={"permissions": sorted(permission_keys)},
    )
    return role


def update_role(s: Session, role: Role, payload: dict[str, Any], permission_keys: list[str], *, actor: User) -> Role:
    if role.is_system:
        raise ValueError("System roles cannot be edited.")
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Role name is required.")
    clash = (
        s.query(Role.id)
        .filter(Role.lab_id == role.lab_id, func.lower(Role.name) == name.lower(), Role.id != role.id)
        .first()
    )
    if clash:
        raise ValueError(f"A role named {name} already exists.")
    role.name = name
    role.description = _clean(payload.get("description"))
    role.permissions = _permissions_for(s, permission_keys)
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details=f"Updated role {name}",
        entity_type="Role",
        entity_id=role.id,
        metadata={"permissions": sorted(permission_keys)},
    )
    return role


def delete_role(s: Session, role: Role, *, actor: User) -> None:
    if role.is_system:
        raise ValueError("System roles cannot be deleted.")
    n = s.query(func.count(User.id)).filter(User.role_id == role.id).scalar() or 0
    if n:
        raise ValueError(f"Cannot delete role. {n} user(s) have this role.")
    record_event(
        s,
        actor=actor,
        module="admin",
        action="delete",
        details=f"Deleted role {role.name}",
        entity_type="Role",
        entity_id=role.id,
    )
    s.delete(role)


# ---------- Users ----------


def list_users(s: Session, lab_id: int) -> list[User]:
    return s.query(User).filter(User.lab_id == lab_id).order_by(User.name.asc()).all()


def _lab_role(s: Session, lab_id: int, role_id: Any) -> Role:
    try:
        rid = int(role_id)
    except (TypeError, ValueError):
        raise ValueError("Select a role.") from None
    return get_scoped(s, Role, rid, lab_id, label="Role")


def _check_signature_key(lab_id: int, key: str | None) -> str | None:
    if key and not is_lab_key(lab_id, key):
        raise ValueError("Signature must be uploaded to this lab's storage.")
    return key


def create_user(s: Session, payload: dict[str, Any], *, actor: User) -> User:
    username = normalize_username(payload.get("username"))
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    password = payload.get("password") or ""
    check_password(password)
    if s.query(User.id).filter(User.username == username).first():
        raise ValueError(f"Username {username} is already taken.")
    role = _lab_role(s, actor.lab_id, payload.get("role_id"))
    now = datetime.utcnow()
    u = User(
        lab_id=actor.lab_id,
        role_id=role.id,
        username=username,
        name=name,
        email=_clean(payload.get("email")),
        phone=_clean(payload.get("phone")),
        designation=_clean(payload.get("designation")),
        signature_key=_check_signature_key(actor.lab_id, _clean(payload.get("signature_key"))),
        password_hash=generate_password_hash(password),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(u)
    s.flush()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="create",
        details=f"Created user {username} ({role.name})",
        entity_type="User",
        entity_id=u.id,
    )
    return u


def update_user(s: Session, target: User, payload: dict[str, Any], *, actor: User) -> User:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    role = _lab_role(s, target.lab_id, payload.get("role_id"))
    is_active = bool(payload.get("is_active"))
    if target.id == actor.id and not is_active:
        raise ValueError("You cannot deactivate your own account.")
    if target.id == actor.id and target.role_id != role.id:
        raise ValueError("You cannot change your own role.")
    target.name = name
    target.role_id = role.id
    target.role = role
    target.email = _clean(payload.get("email"))
    target.phone = _clean(payload.get("phone"))
    target.designation = _clean(payload.get("designation"))
    if "signature_key" in payload:
        target.signature_key = _check_signature_key(target.lab_id, _clean(payload.get("signature_key")))
    target.is_active = is_active
    target.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details=f"Updated user {target.username}",
        entity_type="User",
        entity_id=target.id,
    )
    return target


def reset_password(s: Session, target: User, new_password: str, *, actor: User) -> User:
    """Sets a new password; sessions opened before now are signed out on their next request."""
    check_password(new_password)
    now = datetime.utcnow()
    target.password_hash = generate_password_hash(new_password)
    target.password_changed_at = now
    target.updated_at = now
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details=f"Reset password for {target.username}",
        entity_type="User",
        entity_id=target.id,
    )
    return target


def set_menu_access(s: Session, target: User, hidden: list[str], *, actor: User) -> User:
    unknown = [h for h in hidden if h not in MENU_ITEMS]
    if unknown:
        raise ValueError(f"Unknown menu item(s): {', '.join(unknown)}")
    target.menu_access_json = json.dumps(sorted(set(hidden))) if hidden else None
    target.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details=f"Updated menu access for {target.username}",
        entity_type="User",
        entity_id=target.id,
        metadata={"hidden": sorted(set(hidden))},
    )
    return target


def user_document_count(s: Session, target: User) -> int:
    from app.lims.modules.accounts.models import Contract, Invoice, Quotation
    from app.lims.modules.reports.models import Report

    n = (
        s.query(func.count(Report.id))
        .filter((Report.created_by_id == target.id) | (Report.reviewed_by_id == target.id))
        .scalar()
        or 0
    )
    for model in (Invoice, Quotation, Contract):
        n += s.query(func.count(model.id)).filter(model.created_by_id == target.id).scalar() or 0
    return int(n)


def delete_user(s: Session, target: User, *, actor: User) -> None:
    from app.lims.modules.samples.models import Registration, Sample, TestResult

    if target.id == actor.id:
        raise ValueError("You cannot delete your own account.")
    docs = user_document_count(s, target)
    if docs:
        raise ValueError(
            f"Cannot delete user. {docs} report(s), invoice(s), quotation(s) or contract(s) are associated "
            "with this user. Deactivate the account instead."
        )
    uid = target.id
    for model, cols in (
        (Sample, ("assigned_to_id", "collected_by_id", "registered_by_id", "deleted_by_id")),
        (Registration, ("collected_by_id", "registered_by_id")),
        (TestResult, ("entered_by_id",)),
        (AuditLog, ("user_id",)),
    ):
        for col in cols:
            s.execute(update(model).where(getattr(model, col) == uid).values({col: None}))
    record_event(
        s,
        actor=actor,
        module="admin",
        action="delete",
        details=f"Deleted user {target.username}",
        entity_type="User",
        entity_id=uid,
    )
    s.delete(target)


# ---------- Portal users ----------


def list_portal_users(s: Session, lab_id: int) -> list[PortalUser]:
    return s.query(PortalUser).filter(PortalUser.lab_id == lab_id).order_by(PortalUser.username.asc()).all()


def create_portal_user(s: Session, payload: dict[str, Any], *, actor: User) -> PortalUser:
    username = normalize_username(payload.get("username"))
    password = payload.get("password") or ""
    check_password(password)
    if s.query(PortalUser.id).filter(PortalUser.username == username).first():
        raise ValueError(f"Username {username} is already taken.")
    try:
        customer_id = int(payload.get("customer_id"))
    except (TypeError, ValueError):
        raise ValueError("Select a customer.") from None
    customer = get_scoped(s, Customer, customer_id, actor.lab_id, label="Customer")
    pu = PortalUser(
        lab_id=actor.lab_id,
        customer_id=customer.id,
        username=username,
        name=_clean(payload.get("name")),
        email=_clean(payload.get("email")),
        password_hash=generate_password_hash(password),
        is_active=True,
        created_at=datetime.utcnow(),
    )
    s.add(pu)
    s.flush()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="create",
        details=f"Created portal user {username} for {customer.display_name}",
        entity_type="PortalUser",
        entity_id=pu.id,
    )
    return pu


def update_portal_user(s: Session, pu: PortalUser, payload: dict[str, Any], *, actor: User) -> PortalUser:
    pu.name = _clean(payload.get("name"))
    pu.email = _clean(payload.get("email"))
    pu.is_active = bool(payload.get("is_active"))
    if payload.get("customer_id"):
        try:
            customer_id = int(payload.get("customer_id"))
        except (TypeError, ValueError):
            raise ValueError("Select a customer.") from None
        pu.customer_id = get_scoped(s, Customer, customer_id, pu.lab_id, label="Customer").id
    password = payload.get("password") or ""
    if password:
        check_password(password)
        pu.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details=f"Updated portal user {pu.username}",
        entity_type="PortalUser",
        entity_id=pu.id,
    )
    return pu


def delete_portal_user(s: Session, pu: PortalUser, *, actor: User) -> None:
    record_event(
        s,
        actor=actor,
        module="admin",
        action="delete",
        details=f"Deleted portal user {pu.username}",
        entity_type="PortalUser",
        entity_id=pu.id,
    )
    s.delete(pu)


# ---------- Lab settings ----------

_LAB_FIELDS = ("name", "address", "phone", "email", "website", "trn")


def update_lab_settings(s: Session, lab: Lab, payload: dict[str, Any], *, actor: User) -> Lab:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Lab name is required.")
    for f in _LAB_FIELDS:
        setattr(lab, f, _clean(payload.get(f)) if f != "name" else name)
    if "logo_key" in payload:
        key = _clean(payload.get("logo_key"))
        if key and not is_lab_key(lab.id, key):
            raise ValueError("Logo must be uploaded to this lab's storage.")
        lab.logo_key = key
    lab.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details="Updated lab settings",
        entity_type="Lab",
        entity_id=lab.id,
    )
    return lab


def update_zoho_settings(s: Session, lab: Lab, payload: dict[str, Any], *, actor: User) -> Lab:
    """A blank secret or refresh token keeps the stored value."""
    lab.zoho_client_id = _clean(payload.get("zoho_client_id"))
    lab.zoho_org_id = _clean(payload.get("zoho_org_id"))
    lab.zoho_api_domain = (_clean(payload.get("zoho_api_domain")) or "https://www.zohoapis.com").rstrip("/")
    for f in ("zoho_client_secret", "zoho_refresh_token"):
        v = _clean(payload.get(f))
        if v:
            setattr(lab, f, v)
    lab.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        module="admin",
        action="edit",
        details="Updated Zoho Books credentials",
        entity_type="Lab",
        entity_id=lab.id,
    )
    return lab


# ---------- Uploads ----------


def save_upload(
    storage: Storage,
    lab_id: int,
    folder: str,
    data: bytes,
    content_type: str | None,
    *,
    max_bytes: int,
) -> str:
    if folder not in UPLOAD_FOLDERS:
        raise ValueError(f"Invalid upload folder: {folder}")
    ctype = (content_type or "").split(";")[0].strip().lower()
    ext = UPLOAD_CONTENT_TYPES.get(ctype)
    if ext is None:
        raise ValueError("Only PNG, JPEG, WebP or SVG images are allowed.")
    if not data:
        raise ValueError("The uploaded file is empty.")
    if len(data) > max_bytes:
        raise ValueError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")
    key = lab_key(lab_id, folder, ext)
    storage.put_bytes(key, data, content_type=ctype)
    return key


def delete_upload(storage: Storage, lab_id: int, key: str) -> None:
    key = (key or "").strip()
    if not is_lab_key(lab_id, key):
        raise ValueError("Cannot delete files outside this lab's storage.")
    storage.delete(key)


# ---------- Tenant seeding ----------


def seed_lab(
    s: Session,
    *,
    name: str,
    code: str,
    admin_username: str,
    admin_password: str,
    admin_name: str = "Administrator",
) -> tuple[Lab, User]:
    """Create a lab with its counters, system roles and first admin user (idempotent on code/username)."""
    lab = s.query(Lab).filter(Lab.code == code).one_or_none()
    if lab is None:
        lab = Lab(name=name, code=code)
        s.add(lab)
        s.flush()
    ensure_format_ids(s, lab.id)
    roles = ensure_system_roles(s, lab.id)
    username = normalize_username(admin_username)
    admin = s.query(User).filter(User.username == username).one_or_none()
    if admin is None:
        check_password(admin_password)
        admin = User(
            lab_id=lab.id,
            role_id=roles["Admin"].id,
            username=username,
            name=admin_name,
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(admin)
        s.flush()
    return lab, admin
