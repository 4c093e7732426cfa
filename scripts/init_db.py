import sys
from pathlib import Path
import os

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import script_session
from app.lims.modules.users.service import ensure_permissions, seed_lab


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, the first lab, its system roles and admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    lab_name = (os.environ.get("LAB_NAME") or "Main Laboratory").strip()
    lab_code = (os.environ.get("LAB_CODE") or "MAIN").strip().upper()
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me-now"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///lims.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        ensure_permissions(s)
        lab, admin = seed_lab(
            s,
            name=lab_name,
            code=lab_code,
            admin_username=admin_username,
            admin_password=admin_password,
        )

    print("Initialized database (seed_only).")
    print(f"Lab: {lab.name} ({lab.code})")
    print(f"Admin username: {admin.username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
