from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_config_value(*keys: str, default: str = "") -> str:
    for key in keys:
        value = os.getenv(key, "").strip()
        if value:
            return value
    return default


def _get_bool(*keys: str, default: bool = False) -> bool:
    raw = _get_config_value(*keys)
    if not raw:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _pick_supabase_key() -> str:
    return (
        _get_config_value("SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE_KEY")
        or _get_config_value("SUPABASE_KEY")
        or _get_config_value("SUPABASE_ANON_KEY")
    )


@dataclass(frozen=True)
class Settings:
    app_env: str
    supabase_url: str
    supabase_key: str
    persistence_backend: str
    workflow_commit_rpc: str
    event_bus_backend: str
    kafka_bootstrap_servers: str
    kafka_topic: str
    side_effects_async: bool
    side_effect_workers: int
    log_level: str
    system_actor_id: str

    def supabase_url_valid(self) -> bool:
        # Must be project URL, not postgres DSN.
        return bool(re.match(r"^https://[a-z0-9-]+\.supabase\.co$", self.supabase_url))

    def supabase_key_present(self) -> bool:
        return bool(self.supabase_key)


def load_settings() -> Settings:
    return Settings(
        app_env=_get_config_value("APP_ENV", default="dev"),
        supabase_url=_get_config_value("SUPABASE_URL").rstrip("/"),
        supabase_key=_pick_supabase_key(),
        persistence_backend=_get_config_value("PERSISTENCE_BACKEND", default="auto").lower(),
        workflow_commit_rpc=_get_config_value("WORKFLOW_COMMIT_RPC", default="commit_workflow_transition"),
        event_bus_backend=_get_config_value("EVENT_BUS_BACKEND", default="inmemory").lower(),
        kafka_bootstrap_servers=_get_config_value("KAFKA_BOOTSTRAP_SERVERS"),
        kafka_topic=_get_config_value("KAFKA_TOPIC", default="workflow-events"),
        side_effects_async=_get_bool("SIDE_EFFECTS_ASYNC", default=False),
        side_effect_workers=int(_get_config_value("SIDE_EFFECT_WORKERS", default="4") or 4),
        log_level=_get_config_value("LOG_LEVEL", default="INFO").upper(),
        system_actor_id=_get_config_value("SYSTEM_ACTOR_ID", default="system-scheduler"),
    )


settings = load_settings()
