#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from freightops.config import settings
from freightops.domain.capabilities import ROLE_SYSTEM, Actor
from freightops.logging_setup import configure_logging
from freightops.services.permit_expiry import expire_overdue_permits
from freightops.services.workflow_service import build_workflow_service


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire active work permits past their validity window")
    parser.add_argument("--actor-id", default=settings.system_actor_id, help="Service account recorded in the audit log")
    parser.add_argument("--fetch-limit", type=int, default=500, help="Max active permits to inspect")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()
    service = build_workflow_service()
    actor = Actor.of(args.actor_id, ROLE_SYSTEM)

    summary = expire_overdue_permits(service, actor, limit=max(1, args.fetch_limit))
    summary["persistence"] = "supabase" if service.using_supabase else "memory"
    summary["failures"] = summary["failures"][:10]
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
