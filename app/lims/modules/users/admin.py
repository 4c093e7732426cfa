from __future__ import annotations

from datetime import datetime
from io import BytesIO

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for

from app.lims.audit import record_event
from app.lims.constants import DEFAULT_FORMAT_IDS, MENU_ITEMS, PERMISSION_ACTIONS, PERMISSION_MODULES, UPLOAD_FOLDERS
from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import FormatID, PortalUser, Role, User
from app.lims.modules.customers.service import export_customers_csv, import_customers_csv, list_customers
from app.lims.modules.sample_types.service import export_sample_types_csv, import_sample_types_csv
from app.lims.modules.users.service import (
    create_portal_user,
    create_role,
    create_user,
    delete_portal_user,
    delete_role,
    delete_upload,
    delete_user,
    list_portal_users,
    list_roles,
    list_users,
    reset_password,
    save_upload,
    set_menu_access,
    update_lab_settings,
    update_portal_user,
    update_role,
    update_user,
    update_zoho_settings,
)
from app.lims.numbering import ensure_format_ids, update_format_prefix
from app.lims.rbac import require_permission
from app.lims.storage import StorageError, is_lab_key
from app.lims.utils import app_storage

bp = Blueprint("users", __name__)

_USER_FIELDS = ("username", "name", "email", "phone", "designation", "role_id", "password", "signature_key")
_PORTAL_FIELDS = ("username", "name", "email", "customer_id", "password")
_LAB_FIELDS = ("name", "address", "phone", "email", "website", "trn", "logo_key")
_ZOHO_FIELDS = ("zoho_client_id", "zoho_client_secret", "zoho_refresh_token", "zoho_org_id", "zoho_api_domain")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _form(fields: tuple[str, ...]) -> dict:
    return {k: request.form.get(k) for k in fields if k in request.form}


def _upload_from_request(folder: str) -> str:
    f = request.files.get("file")
    if f is None or not f.filename:
        raise ValueError("Choose a file to upload.")
    return save_upload(
        app_storage(),
        _current_user().lab_id,
        folder,
        f.read(),
        f.mimetype,
        max_bytes=int(current_app.config.get("UPLOAD_MAX_BYTES") or 2 * 1024 * 1024),
    )


# ---------- Users ----------
@bp.get("/users")
@require_permission("admin:view")
def users_list():
    s = db_session()
    u = _current_user()
    return render_template("admin/users/list.html", users=list_users(s, u.lab_id), roles=list_roles(s, u.lab_id))


@bp.get("/users/new")
@require_permission("admin:create")
def users_new_get():
    s = db_session()
    u = _current_user()
    return render_template("admin/users/edit.html", account=None, roles=list_roles(s, u.lab_id), menu_items=MENU_ITEMS)


@bp.post("/users/new")
@require_permission("admin:create")
def users_new_post():
    s = db_session()
    u = _current_user()
    payload = _form(_USER_FIELDS)
    if payload.get("password") != request.form.get("password_confirm"):
        flash("Passwords do not match.", "danger")
        return redirect(url_for("users.users_new_get"))
    try:
        account = create_user(s, payload, actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.users_new_get"))
    s.commit()
    flash(f"Account created for {account.username}.", "success")
    return redirect(url_for("users.users_list"))


@bp.get("/users/<int:user_id>")
@require_permission("admin:view")
def users_detail(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    return render_template(
        "admin/users/edit.html",
        account=account,
        roles=list_roles(s, u.lab_id),
        menu_items=MENU_ITEMS,
    )


@bp.post("/users/<int:user_id>/edit")
@require_permission("admin:edit")
def users_edit_post(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    payload = _form(_USER_FIELDS)
    payload["is_active"] = request.form.get("is_active") == "1"
    try:
        update_user(s, account, payload, actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Account updated for {account.username}.", "success")
    return redirect(url_for("users.users_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("admin:edit")
def users_reset_password(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    password = request.form.get("password") or ""
    if password != (request.form.get("password_confirm") or ""):
        flash("Passwords do not match.", "danger")
        return redirect(url_for("users.users_detail", user_id=user_id))
    try:
        reset_password(s, account, password, actor=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Password reset for {account.username}.", "success")
    return redirect(url_for("users.users_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/menu-access")
@require_permission("admin:edit")
def users_menu_access(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    try:
        set_menu_access(s, account, request.form.getlist("hidden"), actor=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Menu access updated.", "success")
    return redirect(url_for("users.users_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/signature")
@require_permission("admin:edit")
def users_signature_upload(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    try:
        key = _upload_from_request("signatures")
    except (ValueError, StorageError) as e:
        flash(str(e), "danger")
        return redirect(url_for("users.users_detail", user_id=user_id))
    account.signature_key = key
    account.updated_at = datetime.utcnow()
    record_event(s, actor=u, module="admin", action="edit", details=f"Uploaded signature for {account.username}", entity_type="User", entity_id=account.id)
    s.commit()
    flash("Signature uploaded.", "success")
    return redirect(url_for("users.users_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/delete")
@require_permission("admin:delete")
def users_delete(user_id: int):
    s = db_session()
    u = _current_user()
    account = get_scoped_or_404(s, User, user_id, u.lab_id)
    username = account.username
    try:
        delete_user(s, account, actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.users_detail", user_id=user_id))
    s.commit()
    flash(f"Deleted user {username}.", "success")
    return redirect(url_for("users.users_list"))


# ---------- Roles ----------
@bp.get("/roles")
@require_permission("admin:view")
def roles_list():
    s = db_session()
    u = _current_user()
    return render_template("admin/roles/list.html", roles=list_roles(s, u.lab_id))


def _role_form_context(role: Role | None) -> dict:
    return {
        "role": role,
        "modules": PERMISSION_MODULES,
        "actions": PERMISSION_ACTIONS,
        "granted": {p.key for p in role.permissions} if role else set(),
    }


@bp.get("/roles/new")
@require_permission("admin:create")
def roles_new_get():
    return render_template("admin/roles/edit.html", **_role_form_context(None))


@bp.post("/roles/new")
@require_permission("admin:create")
def roles_new_post():
    s = db_session()
    u = _current_user()
    try:
        role = create_role(s, _form(("name", "description")), request.form.getlist("permissions"), actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.roles_new_get"))
    s.commit()
    flash(f"Created role {role.name}.", "success")
    return redirect(url_for("users.roles_list"))


@bp.get("/roles/<int:role_id>/edit")
@require_permission("admin:edit")
def roles_edit_get(role_id: int):
    s = db_session()
    u = _current_user()
    role = get_scoped_or_404(s, Role, role_id, u.lab_id)
    return render_template("admin/roles/edit.html", **_role_form_context(role))


@bp.post("/roles/<int:role_id>/edit")
@require_permission("admin:edit")
def roles_edit_post(role_id: int):
    s = db_session()
    u = _current_user()
    role = get_scoped_or_404(s, Role, role_id, u.lab_id)
    try:
        update_role(s, role, _form(("name", "description")), request.form.getlist("permissions"), actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.roles_edit_get", role_id=role_id))
    s.commit()
    flash(f"Updated role {role.name}.", "success")
    return redirect(url_for("users.roles_list"))


@bp.post("/roles/<int:role_id>/delete")
@require_permission("admin:delete")
def roles_delete(role_id: int):
    s = db_session()
    u = _current_user()
    role = get_scoped_or_404(s, Role, role_id, u.lab_id)
    name = role.name
    try:
        delete_role(s, role, actor=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Deleted role {name}.", "success")
    return redirect(url_for("users.roles_list"))


# ---------- Portal users ----------
@bp.get("/portal-users")
@require_permission("admin:view")
def portal_users_list():
    s = db_session()
    u = _current_user()
    return render_template(
        "admin/portal_users/list.html",
        portal_users=list_portal_users(s, u.lab_id),
        customers=list_customers(s, u.lab_id, status="active"),
    )


@bp.post("/portal-users/new")
@require_permission("admin:create")
def portal_users_new():
    s = db_session()
    u = _current_user()
    try:
        pu = create_portal_user(s, _form(_PORTAL_FIELDS), actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Portal account created for {pu.username}.", "success")
    return redirect(url_for("users.portal_users_list"))


@bp.post("/portal-users/<int:portal_user_id>/edit")
@require_permission("admin:edit")
def portal_users_edit(portal_user_id: int):
    s = db_session()
    u = _current_user()
    pu = get_scoped_or_404(s, PortalUser, portal_user_id, u.lab_id)
    payload = _form(_PORTAL_FIELDS)
    payload["is_active"] = request.form.get("is_active") == "1"
    try:
        update_portal_user(s, pu, payload, actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Portal account updated for {pu.username}.", "success")
    return redirect(url_for("users.portal_users_list"))


@bp.post("/portal-users/<int:portal_user_id>/delete")
@require_permission("admin:delete")
def portal_users_delete(portal_user_id: int):
    s = db_session()
    u = _current_user()
    pu = get_scoped_or_404(s, PortalUser, portal_user_id, u.lab_id)
    username = pu.username
    delete_portal_user(s, pu, actor=u)
    s.commit()
    flash(f"Deleted portal account {username}.", "success")
    return redirect(url_for("users.portal_users_list"))


# ---------- Lab settings ----------
@bp.get("/settings")
@require_permission("admin:view")
def settings():
    s = db_session()
    u = _current_user()
    format_ids = ensure_format_ids(s, u.lab_id)
    s.commit()
    return render_template(
        "admin/settings.html",
        lab=u.lab,
        format_ids=sorted(format_ids, key=lambda f: list(DEFAULT_FORMAT_IDS).index(f.module) if f.module in DEFAULT_FORMAT_IDS else 99),
    )


@bp.post("/settings/lab")
@require_permission("admin:edit")
def settings_lab():
    s = db_session()
    u = _current_user()
    try:
        update_lab_settings(s, u.lab, _form(_LAB_FIELDS), actor=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Lab settings saved.", "success")
    return redirect(url_for("users.settings"))


@bp.post("/settings/logo")
@require_permission("admin:edit")
def settings_logo():
    s = db_session()
    u = _current_user()
    try:
        key = _upload_from_request("logos")
    except (ValueError, StorageError) as e:
        flash(str(e), "danger")
        return redirect(url_for("users.settings"))
    u.lab.logo_key = key
    u.lab.updated_at = datetime.utcnow()
    record_event(s, actor=u, module="admin", action="edit", details="Uploaded lab logo", entity_type="Lab", entity_id=u.lab_id)
    s.commit()
    flash("Logo uploaded.", "success")
    return redirect(url_for("users.settings"))


@bp.post("/settings/zoho")
@require_permission("admin:edit")
def settings_zoho():
    s = db_session()
    u = _current_user()
    update_zoho_settings(s, u.lab, _form(_ZOHO_FIELDS), actor=u)
    s.commit()
    flash("Zoho Books credentials saved.", "success")
    return redirect(url_for("users.settings"))


@bp.post("/settings/format-ids")
@require_permission("admin:edit")
def settings_format_ids():
    s = db_session()
    u = _current_user()
    changed = []
    try:
        for fid in s.query(FormatID).filter(FormatID.lab_id == u.lab_id).all():
            raw = (request.form.get(f"prefix_{fid.module}") or "").strip()
            if raw and raw.upper() != fid.prefix:
                update_format_prefix(s, u.lab_id, fid.module, raw)
                changed.append(fid.module)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.settings"))
    if changed:
        record_event(
            s,
            actor=u,
            module="admin",
            action="edit",
            details="Updated document number prefixes",
            metadata={"modules": changed},
        )
    s.commit()
    flash("Number formats saved.", "success")
    return redirect(url_for("users.settings"))


# ---------- CSV import / export ----------
_CSV_KINDS = {
    "customers": (export_customers_csv, import_customers_csv),
    "sample-types": (export_sample_types_csv, import_sample_types_csv),
}


@bp.get("/import-export")
@require_permission("masters:view")
def import_export():
    return render_template("admin/import_export.html", kinds=list(_CSV_KINDS))


@bp.get("/import-export/<kind>.csv")
@require_permission("masters:view")
def csv_export(kind: str):
    if kind not in _CSV_KINDS:
        abort(404)
    s = db_session()
    u = _current_user()
    exporter, _ = _CSV_KINDS[kind]
    data = exporter(s, u.lab_id).encode("utf-8")
    return send_file(
        BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"{kind}-{datetime.utcnow():%Y%m%d}.csv",
    )


@bp.post("/import-export/<kind>")
@require_permission("masters:create")
def csv_import(kind: str):
    if kind not in _CSV_KINDS:
        abort(404)
    s = db_session()
    u = _current_user()
    f = request.files.get("file")
    if f is None or not f.filename:
        flash("Choose a CSV file to import.", "danger")
        return redirect(url_for("users.import_export"))
    _, importer = _CSV_KINDS[kind]
    try:
        result = importer(s, f.read(), user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("users.import_export"))
    s.commit()
    flash(f"Import finished: {result.summary}.", "success" if not result.errors else "warning")
    for err in result.errors[:20]:
        flash(str(err), "warning")
    return redirect(url_for("users.import_export"))


# ---------- Uploads ----------
@bp.post("/uploads")
@require_permission("admin:edit")
def uploads_create():
    folder = (request.form.get("folder") or "").strip()
    if folder not in UPLOAD_FOLDERS:
        return jsonify({"error": f"Invalid upload folder: {folder}"}), 400
    try:
        key = _upload_from_request(folder)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except StorageError as e:
        current_app.logger.error("Upload failed (folder=%s): %s", folder, e)
        return jsonify({"error": "Upload failed."}), 500
    return jsonify({"key": key, "url": url_for("users.uploads_get", key=key)})


@bp.post("/uploads/delete")
@require_permission("admin:edit")
def uploads_delete():
    u = _current_user()
    try:
        delete_upload(app_storage(), u.lab_id, request.form.get("key") or "")
    except ValueError as e:
        return jsonify({"error": str(e)}), 403
    except StorageError as e:
        return jsonify({"error": str(e)}), 500
    return jsonify({"ok": True})


@bp.get("/uploads/<path:key>")
def uploads_get(key: str):
    u = getattr(g, "current_user", None)
    if not u:
        return redirect(url_for("auth.login_get", next=request.path))
    if not is_lab_key(u.lab_id, key):
        abort(404)
    try:
        data = app_storage().read_bytes(key)
    except StorageError:
        abort(404)
    ext = key.rsplit(".", 1)[-1].lower()
    mimetype = {"png": "image/png", "jpg": "image/jpeg", "webp": "image/webp", "svg": "image/svg+xml"}.get(
        ext, "application/octet-stream"
    )
    return send_file(BytesIO(data), mimetype=mimetype)
