from __future__ import annotations

import re
from typing import Any

from supabase import create_client

from civic_intel.config import Settings


def supabase_url_valid(url: str) -> bool:
    # Must be project URL, not postgres DSN.
    return bool(re.match(r"^https://[a-z0-9-]+\.supabase\.co$", url))


def get_supabase_client(cfg: Settings) -> tuple[Any | None, str | None]:
    if not cfg.supabase_configured():
        return None, "SUPABASE_URL or SUPABASE_KEY missing"
    if not supabase_url_valid(cfg.supabase_url):
        return None, "SUPABASE_URL invalid (must look like https://<project-ref>.supabase.co)"
    try:
        return create_client(cfg.supabase_url, cfg.supabase_key), None
    except Exception as exc:  # pragma: no cover
        return None, f"Supabase init failed: {exc}"
