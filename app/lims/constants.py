"""
Central constants for the LIMS application.
"""
from __future__ import annotations

# Permission matrix: every permission is "<module>:<action>"
PERMISSION_MODULES = ("dashboard", "masters", "process", "accounts", "reports", "admin")
PERMISSION_ACTIONS = ("view", "create", "edit", "delete")

ADMIN_ROLE = "Admin"

# Seeded per lab; cannot be edited or deleted from the UI.
SYSTEM_ROLES: dict[str, tuple[str, list[str]]] = {
    ADMIN_ROLE: ("Full access to every module", [f"{m}:{a}" for m in PERMISSION_MODULES for a in PERMISSION_ACTIONS]),
    "Lab Manager": (
        "Manages lab operations, authenticates reports",
        [f"{m}:{a}" for m in ("dashboard", "masters", "process", "reports") for a in PERMISSION_ACTIONS]
        + ["accounts:view"],
    ),
    "Accounts": (
        "Quotations, contracts and invoicing",
        ["dashboard:view", "masters:view"] + [f"accounts:{a}" for a in PERMISSION_ACTIONS],
    ),
    "Chemist": (
        "Enters test results",
        ["dashboard:view", "masters:view", "process:view", "process:edit", "reports:view"],
    ),
    "Registration": (
        "Registers samples",
        ["dashboard:view", "masters:view", "masters:create", "process:view", "process:create", "process:edit"],
    ),
    "Sampler": (
        "Collects samples",
        ["dashboard:view", "process:view", "process:create"],
    ),
}

# Roles that see every sample on the test entry screen, not only their own.
MANAGER_ROLES = frozenset({ADMIN_ROLE, "Lab Manager"})

# (module, prefix) counters seeded for every new lab
DEFAULT_FORMAT_IDS: dict[str, str] = {
    "registration": "REG",
    "sample": "SPL",
    "report": "RPT",
    "invoice": "INV",
    "proforma": "PI",
    "quotation": "QUO",
    "contract": "CON",
}

CUSTOMER_STATUSES = ("active", "inactive")
SAMPLE_TYPE_STATUSES = ("active", "inactive")

SAMPLE_STATUSES = ("pending", "registered", "assigned", "testing", "completed", "reported")
SAMPLE_PRIORITIES = ("normal", "urgent", "low")
JOB_TYPES = ("testing", "survey", "inspection")
SAMPLING_METHODS = ("NP", "DP", "LP", "SP")

TEST_RESULT_STATUSES = ("pending", "completed")

REPORT_STATUSES = ("draft", "review", "revision", "approved", "published")

QUOTATION_STATUSES = ("draft", "sent", "accepted", "rejected", "expired", "converted")
CONTRACT_STATUSES = ("draft", "active", "completed", "cancelled")
INVOICE_STATUSES = ("draft", "sent", "paid", "overdue", "cancelled", "converted", "consolidated")
INVOICE_TYPES = ("tax", "proforma")

# Sidebar entries a user can have hidden (User.menu_access_json)
MENU_ITEMS = (
    "dashboard",
    "customers",
    "sample_types",
    "registrations",
    "samples",
    "sample_collection",
    "test_results",
    "reports",
    "report_templates",
    "status_tracking",
    "quotations",
    "contracts",
    "invoices",
    "trash",
    "users",
    "roles",
    "portal_users",
    "settings",
    "audit",
    "import_export",
)

UPLOAD_FOLDERS = ("logos", "signatures", "templates")
UPLOAD_CONTENT_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}

ZOHO_ACCOUNTS_URLS = {
    "https://www.zohoapis.com": "https://accounts.zoho.com",
    "https://www.zohoapis.eu": "https://accounts.zoho.eu",
    "https://www.zohoapis.in": "https://accounts.zoho.in",
    "https://www.zohoapis.com.au": "https://accounts.zoho.com.au",
    "https://www.zohoapis.jp": "https://accounts.zoho.jp",
    "https://www.zohoapis.ca": "https://accounts.zoho.ca",
}
