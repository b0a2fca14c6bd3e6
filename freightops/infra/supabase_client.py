from __future__ import annotations

from typing import Any

from supabase import create_client

from freightops.config import Settings, settings


def _build_client(cfg: Settings, api_key: str) -> tuple[Any | None, str | None]:
    if not cfg.supabase_url or not api_key:
        return None, "SUPABASE_URL or API key missing"

    if not cfg.supabase_url_valid():
        return None, "SUPABASE_URL invalid (must look like https://<project-ref>.supabase.co)"

    try:
        client = create_client(cfg.supabase_url, api_key)
        return client, None
    except Exception as exc:  # pragma: no cover
        return None, f"Supabase init failed: {exc}"


def get_supabase_client(cfg: Settings | None = None) -> tuple[Any | None, str | None]:
    cfg = cfg or settings
    return _build_client(cfg, str(cfg.supabase_key or "").strip())


def exec_query(query: Any) -> list[dict[str, Any]]:
    resp = query.execute()
    data = getattr(resp, "data", None)
    if isinstance(data, list):
        return [dict(r) for r in data]
    if isinstance(data, dict):
        return [data]
    return []
