#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then exec gunicorn on app.wsgi:app.

    python scripts/start.py

Tunables: PORT (default 8080), WEB_CONCURRENCY (workers, default 2),
GUNICORN_TIMEOUT (seconds, default 120; batch COA rendering can be slow),
SKIP_RELEASE=1 to start without migrating.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        print(f"ERROR: {name}={raw!r} is not an integer.", flush=True)
        sys.exit(1)
    if not low <= value <= high:
        print(f"ERROR: {name}={value} must be between {low} and {high}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _int_env("PORT", 8080, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=32)
    timeout = _int_env("GUNICORN_TIMEOUT", 120, low=10, high=600)

    if (os.environ.get("SKIP_RELEASE") or "").strip() not in ("1", "true", "yes"):
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== LIMS listening on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals
    os.execvp("gunicorn", gunicorn_argv(port, workers, timeout))


if __name__ == "__main__":
    main()
