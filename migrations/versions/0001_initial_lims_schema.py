"""initial lims schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:12:41.208114

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def _money(name: str, default: str = "0") -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default=default)


def _totals() -> list[sa.Column]:
    return [
        _money("subtotal"),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="5"),
        _money("tax_amount"),
        _money("total"),
    ]


def _line_item() -> list[sa.Column]:
    return [
        sa.Column("description", sa.Text(), nullable=False),
        _money("quantity", "1"),
        _money("unit_price"),
        _money("total"),
    ]


def _user_fk(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def _lab_fk() -> sa.Column:
    return sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    """Create every LIMS table. Idempotent so it can run against a database built by create_all()."""
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    def missing(name: str) -> bool:
        return name not in existing_tables

    # ---- tenancy / access ----
    if missing("labs"):
        op.create_table(
            "labs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("code", sa.String(32), nullable=False, unique=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("website", sa.String(255), nullable=True),
            sa.Column("trn", sa.String(64), nullable=True),
            sa.Column("logo_key", sa.Text(), nullable=True),
            sa.Column("zoho_client_id", sa.Text(), nullable=True),
            sa.Column("zoho_client_secret", sa.Text(), nullable=True),
            sa.Column("zoho_refresh_token", sa.Text(), nullable=True),
            sa.Column("zoho_org_id", sa.String(64), nullable=True),
            sa.Column("zoho_api_domain", sa.String(255), nullable=True),
            *_timestamps(),
        )

    if missing("permissions"):
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("module", sa.String(64), nullable=False),
            sa.Column("action", sa.String(32), nullable=False),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("module", "action", name="uq_permissions_module_action"),
        )

    if missing("roles"):
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("lab_id", "name", name="uq_roles_lab_name"),
        )

    if missing("role_permissions"):
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
            ),
        )

    if missing("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True),
            sa.Column("username", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("designation", sa.String(128), nullable=True),
            sa.Column("signature_key", sa.Text(), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("menu_access_json", sa.Text(), nullable=True),
            sa.Column("password_changed_at", sa.DateTime(), nullable=True),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_users_lab_id", "users", ["lab_id"])

    if missing("format_ids"):
        op.create_table(
            "format_ids",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("module", sa.String(64), nullable=False),
            sa.Column("prefix", sa.String(16), nullable=False),
            sa.Column("last_number", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("lab_id", "module", name="uq_format_ids_lab_module"),
        )

    if missing("audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("lab_id", sa.Integer(), sa.ForeignKey("labs.id", ondelete="CASCADE"), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("user_name", sa.String(255), nullable=True),
            sa.Column("module", sa.String(64), nullable=False),
            sa.Column("action", sa.String(64), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(64), nullable=True),
            sa.Column("entity_id", sa.String(64), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
        )
        op.create_index("idx_audit_logs_lab_created", "audit_logs", ["lab_id", "created_at"])
        op.create_index("idx_audit_logs_module", "audit_logs", ["module"])

    # ---- masters ----
    if missing("customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("code", sa.String(32), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("company", sa.Text(), nullable=True),
            sa.Column("email", sa.Text(), nullable=True),
            sa.Column("phone", sa.Text(), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("contact_person", sa.Text(), nullable=True),
            sa.Column("trn", sa.String(64), nullable=True),
            sa.Column("payment_term", sa.String(128), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="active"),
            sa.Column("zoho_contact_id", sa.String(64), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "code", name="uq_customers_lab_code"),
        )
        op.create_index("idx_customers_lab_name", "customers", ["lab_id", "name"])
        op.create_index("idx_customers_zoho_contact_id", "customers", ["zoho_contact_id"])

    if missing("contact_persons"):
        op.create_table(
            "contact_persons",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("designation", sa.Text(), nullable=True),
            sa.Column("email", sa.Text(), nullable=True),
            sa.Column("phone", sa.Text(), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_contact_persons_customer_id", "contact_persons", ["customer_id"])

    if missing("portal_users"):
        op.create_table(
            "portal_users",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("username", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_portal_users_customer_id", "portal_users", ["customer_id"])

    if missing("sample_types"):
        op.create_table(
            "sample_types",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("specification_standard", sa.Text(), nullable=True),
            sa.Column("default_tests", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("status", sa.String(16), nullable=False, server_default="active"),
            *_timestamps(),
        )
        op.create_index("idx_sample_types_lab_name", "sample_types", ["lab_id", "name"])

    # ---- process ----
    if missing("registrations"):
        op.create_table(
            "registrations",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("registration_number", sa.String(64), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("job_type", sa.String(32), nullable=False, server_default="testing"),
            sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
            sa.Column("reference", sa.Text(), nullable=True),
            sa.Column("collection_date", sa.DateTime(), nullable=True),
            sa.Column("collection_location", sa.Text(), nullable=True),
            sa.Column("sample_condition", sa.Text(), nullable=True),
            sa.Column("sampling_method", sa.String(16), nullable=False, server_default="NP"),
            sa.Column("sheet_number", sa.String(64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _user_fk("collected_by_id"),
            _user_fk("registered_by_id"),
            sa.Column("registered_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "registration_number", name="uq_registrations_lab_number"),
        )
        op.create_index("idx_registrations_lab_registered_at", "registrations", ["lab_id", "registered_at"])

    if missing("samples"):
        op.create_table(
            "samples",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("sample_number", sa.String(64), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=True),
            sa.Column(
                "registration_id", sa.Integer(), sa.ForeignKey("registrations.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("sub_sample_number", sa.Integer(), nullable=True),
            sa.Column("sample_group", sa.String(4), nullable=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("sample_type_id", sa.Integer(), sa.ForeignKey("sample_types.id"), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("quantity", sa.String(64), nullable=True),
            sa.Column("sample_condition", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
            sa.Column("job_type", sa.String(32), nullable=False, server_default="testing"),
            sa.Column("reference", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            _user_fk("assigned_to_id"),
            _user_fk("collected_by_id"),
            _user_fk("registered_by_id"),
            sa.Column("registered_at", sa.DateTime(), nullable=True),
            sa.Column("collection_date", sa.DateTime(), nullable=True),
            sa.Column("collection_location", sa.Text(), nullable=True),
            sa.Column("sample_point", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            _user_fk("deleted_by_id"),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "sample_number", name="uq_samples_lab_number"),
        )
        op.create_index("idx_samples_lab_status", "samples", ["lab_id", "status"])
        op.create_index("idx_samples_customer_id", "samples", ["customer_id"])
        op.create_index("idx_samples_registration_id", "samples", ["registration_id"])
        op.create_index("idx_samples_assigned_to_id", "samples", ["assigned_to_id"])

    if missing("test_results"):
        op.create_table(
            "test_results",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("sample_id", sa.Integer(), sa.ForeignKey("samples.id", ondelete="CASCADE"), nullable=False),
            sa.Column("parameter", sa.Text(), nullable=False),
            sa.Column("test_method", sa.Text(), nullable=True),
            sa.Column("unit", sa.String(64), nullable=True),
            sa.Column("spec_min", sa.String(64), nullable=True),
            sa.Column("spec_max", sa.String(64), nullable=True),
            sa.Column("result_value", sa.Text(), nullable=True),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("tat", sa.Integer(), nullable=True),
            sa.Column("due_date", sa.DateTime(), nullable=True),
            _user_fk("entered_by_id"),
            sa.Column("entered_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_test_results_sample_id", "test_results", ["sample_id"])
        op.create_index("idx_test_results_status", "test_results", ["status"])

    # ---- reports ----
    if missing("report_templates"):
        op.create_table(
            "report_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("header_text", sa.Text(), nullable=True),
            sa.Column("footer_text", sa.Text(), nullable=True),
            sa.Column("accreditation_text", sa.Text(), nullable=True),
            sa.Column("logo_key", sa.Text(), nullable=True),
            sa.Column("accreditation_logo_key", sa.Text(), nullable=True),
            sa.Column("seal_key", sa.Text(), nullable=True),
            sa.Column("show_lab_logo", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
        )
        op.create_index("idx_report_templates_lab_id", "report_templates", ["lab_id"])

    if missing("reports"):
        op.create_table(
            "reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("report_number", sa.String(64), nullable=False),
            sa.Column("sample_id", sa.Integer(), sa.ForeignKey("samples.id", ondelete="CASCADE"), nullable=False),
            sa.Column(
                "template_id", sa.Integer(), sa.ForeignKey("report_templates.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("report_type", sa.String(32), nullable=False, server_default="coa"),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("summary", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            _user_fk("created_by_id"),
            _user_fk("reviewed_by_id"),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("published_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            _user_fk("deleted_by_id"),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "report_number", name="uq_reports_lab_number"),
        )
        op.create_index("idx_reports_lab_status", "reports", ["lab_id", "status"])
        op.create_index("idx_reports_sample_id", "reports", ["sample_id"])

    if missing("report_verifications"):
        op.create_table(
            "report_verifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("report_id", sa.Integer(), sa.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False),
            sa.Column("code", sa.String(64), nullable=False, unique=True),
            sa.Column("report_number", sa.String(64), nullable=False),
            sa.Column("sample_number", sa.String(64), nullable=False),
            sa.Column("client_name", sa.Text(), nullable=True),
            sa.Column("sample_type_name", sa.Text(), nullable=True),
            sa.Column("test_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lab_name", sa.Text(), nullable=True),
            sa.Column("issued_by_name", sa.Text(), nullable=True),
            sa.Column("issued_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    # ---- accounts ----
    if missing("quotations"):
        op.create_table(
            "quotations",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("quotation_number", sa.String(64), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("valid_until", sa.Date(), nullable=True),
            sa.Column("accepted_date", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_totals(),
            _user_fk("created_by_id"),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "quotation_number", name="uq_quotations_lab_number"),
        )
        op.create_index("idx_quotations_customer_id", "quotations", ["customer_id"])

    if missing("quotation_items"):
        op.create_table(
            "quotation_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("quotation_id", sa.Integer(), sa.ForeignKey("quotations.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sample_id", sa.Integer(), sa.ForeignKey("samples.id", ondelete="SET NULL"), nullable=True),
            *_line_item(),
        )

    if missing("contracts"):
        op.create_table(
            "contracts",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("contract_number", sa.String(64), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("quotation_id", sa.Integer(), sa.ForeignKey("quotations.id", ondelete="SET NULL"), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("terms", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_totals(),
            _user_fk("created_by_id"),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "contract_number", name="uq_contracts_lab_number"),
        )
        op.create_index("idx_contracts_customer_id", "contracts", ["customer_id"])

    if missing("contract_items"):
        op.create_table(
            "contract_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sample_id", sa.Integer(), sa.ForeignKey("samples.id", ondelete="SET NULL"), nullable=True),
            *_line_item(),
        )

    if missing("invoices"):
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("invoice_number", sa.String(64), nullable=False),
            sa.Column("invoice_type", sa.String(16), nullable=False, server_default="tax"),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("paid_date", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("converted_to_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "consolidated_into_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            _user_fk("deleted_by_id"),
            *_totals(),
            _user_fk("created_by_id"),
            *_timestamps(),
            sa.UniqueConstraint("lab_id", "invoice_number", name="uq_invoices_lab_number"),
        )
        op.create_index("idx_invoices_lab_status", "invoices", ["lab_id", "status"])
        op.create_index("idx_invoices_customer_id", "invoices", ["customer_id"])

    if missing("invoice_items"):
        op.create_table(
            "invoice_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sample_id", sa.Integer(), sa.ForeignKey("samples.id", ondelete="SET NULL"), nullable=True),
            *_line_item(),
        )

    # ---- integrations ----
    if missing("zoho_sync_runs"):
        op.create_table(
            "zoho_sync_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            _lab_fk(),
            sa.Column("ran_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("message", sa.Text(), nullable=True),
        )
        op.create_index("idx_zoho_sync_runs_lab_ran", "zoho_sync_runs", ["lab_id", "ran_at"])


def downgrade() -> None:
    for table in (
        "zoho_sync_runs",
        "invoice_items",
        "invoices",
        "contract_items",
        "contracts",
        "quotation_items",
        "quotations",
        "report_verifications",
        "reports",
        "report_templates",
        "test_results",
        "samples",
        "registrations",
        "sample_types",
        "portal_users",
        "contact_persons",
        "customers",
        "audit_logs",
        "format_ids",
        "users",
        "role_permissions",
        "roles",
        "permissions",
        "labs",
    ):
        op.drop_table(table)
