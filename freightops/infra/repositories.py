from __future__ import annotations

import itertools
import logging
from copy import deepcopy
from datetime import datetime, timezone
from threading import RLock
from typing import Any
from uuid import uuid4

from freightops.config import Settings, settings
from freightops.infra.supabase_client import exec_query, get_supabase_client

logger = logging.getLogger(__name__)

DOCUMENTS_TABLE = "workflow_documents"
AUDIT_TABLE = "workflow_audit_log"
SIDE_EFFECTS_TABLE = "workflow_side_effects"
NOTIFICATIONS_TABLE = "notifications"

SIDE_EFFECT_CLAIMED = "claimed"
SIDE_EFFECT_DONE = "done"


class RepositoryError(RuntimeError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(exc: Exception) -> bool:
    code = str(getattr(exc, "code", "") or "")
    return code == "23505" or "duplicate key" in str(exc).lower()


class WorkflowRepository:
    """Persistence port consumed by the workflow engine.

    ``cas_write_status`` and ``commit_transition`` must be atomic per
    document id: the write only lands when the stored status still equals
    ``expected``.
    """

    def create_document(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_document(self, document_type: str, document_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def read_status(self, document_type: str, document_id: str) -> str | None:
        row = self.get_document(document_type, document_id)
        return str(row["status"]) if row else None

    def list_documents(self, document_type: str, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        raise NotImplementedError

    def cas_write_status(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any] | None = None,
    ) -> bool:
        raise NotImplementedError

    def update_payload_if_status(
        self,
        document_type: str,
        document_id: str,
        expected_status: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    def append_audit(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def commit_transition(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any],
        audit_row: dict[str, Any],
    ) -> bool:
        raise NotImplementedError

    def list_audit(self, document_type: str, document_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def claim_side_effect(self, dedup_key: str, document_id: str, edge_id: str, kind: str) -> bool:
        raise NotImplementedError

    def complete_side_effect(self, dedup_key: str) -> None:
        raise NotImplementedError

    def release_side_effect(self, dedup_key: str) -> None:
        raise NotImplementedError

    def set_parent_flag(self, table: str, record_id: str, column: str, value: Any) -> dict[str, Any]:
        raise NotImplementedError

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_notifications(self, document_id: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryRepository(WorkflowRepository):
    def __init__(self) -> None:
        # The lock stands in for the row-level atomicity a real store gives.
        self._lock = RLock()
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}
        self._audit: list[dict[str, Any]] = []
        self._seq = itertools.count(1)
        self._side_effects: dict[str, dict[str, Any]] = {}
        self._parents: dict[str, dict[str, dict[str, Any]]] = {}
        self._notifications: dict[str, dict[str, Any]] = {}

    def create_document(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            now = _utc_now()
            item = {
                "id": row.get("id") or str(uuid4()),
                "created_at": row.get("created_at") or now,
                "updated_at": row.get("updated_at") or now,
                **row,
            }
            key = (str(item["document_type"]), str(item["id"]))
            if key in self._documents:
                raise RepositoryError(f"Document already exists: {item['id']}")
            self._documents[key] = deepcopy(item)
            return deepcopy(item)

    def get_document(self, document_type: str, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._documents.get((document_type, document_id))
            return deepcopy(row) if row else None

    def list_documents(self, document_type: str, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        with self._lock:
            rows = [r for (t, _), r in self._documents.items() if t == document_type]
            if status:
                rows = [r for r in rows if r.get("status") == status]
            rows.sort(key=lambda r: str(r.get("updated_at", r.get("created_at", ""))), reverse=True)
            return [deepcopy(r) for r in rows[:limit]]

    def _cas(self, document_type: str, document_id: str, expected: str, next_status: str, updates: dict[str, Any]) -> bool:
        existing = self._documents.get((document_type, document_id))
        if not existing or existing.get("status") != expected:
            return False
        existing.update(updates)
        existing["status"] = next_status
        existing["updated_at"] = _utc_now()
        return True

    def cas_write_status(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            return self._cas(document_type, document_id, expected, next_status, dict(updates or {}))

    def update_payload_if_status(
        self,
        document_type: str,
        document_id: str,
        expected_status: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        with self._lock:
            existing = self._documents.get((document_type, document_id))
            if not existing or existing.get("status") != expected_status:
                return None
            existing["payload"] = deepcopy(payload)
            existing["updated_at"] = _utc_now()
            return deepcopy(existing)

    def _append_audit_locked(self, row: dict[str, Any]) -> dict[str, Any]:
        item = {"id": row.get("id") or str(uuid4()), **row, "seq": next(self._seq)}
        self._audit.append(item)
        return dict(item)

    def append_audit(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._append_audit_locked(row)

    def commit_transition(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any],
        audit_row: dict[str, Any],
    ) -> bool:
        with self._lock:
            if not self._cas(document_type, document_id, expected, next_status, dict(updates)):
                return False
            self._append_audit_locked(audit_row)
            return True

    def list_audit(self, document_type: str, document_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                r
                for r in self._audit
                if r.get("document_type") == document_type and r.get("document_id") == document_id
            ]
            rows.sort(key=lambda r: (str(r.get("timestamp", "")), int(r.get("seq", 0))))
            return [dict(r) for r in rows]

    def claim_side_effect(self, dedup_key: str, document_id: str, edge_id: str, kind: str) -> bool:
        with self._lock:
            if dedup_key in self._side_effects:
                return False
            self._side_effects[dedup_key] = {
                "dedup_key": dedup_key,
                "document_id": document_id,
                "edge_id": edge_id,
                "kind": kind,
                "status": SIDE_EFFECT_CLAIMED,
                "created_at": _utc_now(),
            }
            return True

    def complete_side_effect(self, dedup_key: str) -> None:
        with self._lock:
            row = self._side_effects.get(dedup_key)
            if row:
                row["status"] = SIDE_EFFECT_DONE

    def release_side_effect(self, dedup_key: str) -> None:
        with self._lock:
            row = self._side_effects.get(dedup_key)
            if row and row.get("status") == SIDE_EFFECT_CLAIMED:
                del self._side_effects[dedup_key]

    def upsert_parent_record(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = {"id": row.get("id") or str(uuid4()), **row}
            self._parents.setdefault(table, {})[str(item["id"])] = dict(item)
            return dict(item)

    def get_parent_record(self, table: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._parents.get(table, {}).get(record_id)
            return dict(row) if row else None

    def set_parent_flag(self, table: str, record_id: str, column: str, value: Any) -> dict[str, Any]:
        with self._lock:
            row = self._parents.get(table, {}).get(record_id)
            if row is None:
                raise RepositoryError(f"Parent record not found: {table}/{record_id}")
            row[column] = value
            row["updated_at"] = _utc_now()
            return dict(row)

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            key = str(row["dedup_key"])
            if key in self._notifications:
                return None
            item = {"id": row.get("id") or str(uuid4()), "created_at": row.get("created_at") or _utc_now(), **row}
            self._notifications[key] = item
            return dict(item)

    def list_notifications(self, document_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self._notifications.values())
            if document_id:
                rows = [r for r in rows if r.get("document_id") == document_id]
            rows.sort(key=lambda r: str(r.get("created_at", "")))
            return [dict(r) for r in rows]


class SupabaseRepository(WorkflowRepository):
    def __init__(self, client: Any, commit_rpc: str = "commit_workflow_transition") -> None:
        self.client = client
        self.commit_rpc = commit_rpc

    def _insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        payload = dict(row)
        payload.setdefault("id", str(uuid4()))
        try:
            out = exec_query(self.client.table(table).insert(payload))
        except Exception as exc:
            raise RepositoryError(f"Insert failed for {table}: {exc}") from exc
        if not out:
            raise RepositoryError(f"Insert failed for {table}")
        return out[0]

    def create_document(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one(DOCUMENTS_TABLE, row)

    def get_document(self, document_type: str, document_id: str) -> dict[str, Any] | None:
        try:
            out = exec_query(
                self.client.table(DOCUMENTS_TABLE)
                .select("*")
                .eq("document_type", document_type)
                .eq("id", document_id)
                .limit(1)
            )
        except Exception as exc:
            raise RepositoryError(f"Read failed for document {document_id}: {exc}") from exc
        return out[0] if out else None

    def read_status(self, document_type: str, document_id: str) -> str | None:
        try:
            out = exec_query(
                self.client.table(DOCUMENTS_TABLE)
                .select("status")
                .eq("document_type", document_type)
                .eq("id", document_id)
                .limit(1)
            )
        except Exception as exc:
            raise RepositoryError(f"Status read failed for document {document_id}: {exc}") from exc
        return str(out[0]["status"]) if out else None

    def list_documents(self, document_type: str, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        q = self.client.table(DOCUMENTS_TABLE).select("*").eq("document_type", document_type)
        if status:
            q = q.eq("status", status)
        try:
            return exec_query(q.order("updated_at", desc=True).limit(limit))
        except Exception as exc:
            raise RepositoryError(f"List failed for {document_type}: {exc}") from exc

    def cas_write_status(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any] | None = None,
    ) -> bool:
        payload = {**dict(updates or {}), "status": next_status, "updated_at": _utc_now()}
        try:
            out = exec_query(
                self.client.table(DOCUMENTS_TABLE)
                .update(payload)
                .eq("document_type", document_type)
                .eq("id", document_id)
                .eq("status", expected)
            )
        except Exception as exc:
            raise RepositoryError(f"Status write failed for document {document_id}: {exc}") from exc
        return bool(out)

    def update_payload_if_status(
        self,
        document_type: str,
        document_id: str,
        expected_status: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        try:
            out = exec_query(
                self.client.table(DOCUMENTS_TABLE)
                .update({"payload": payload, "updated_at": _utc_now()})
                .eq("document_type", document_type)
                .eq("id", document_id)
                .eq("status", expected_status)
            )
        except Exception as exc:
            raise RepositoryError(f"Update failed for document {document_id}: {exc}") from exc
        return out[0] if out else None

    def append_audit(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one(AUDIT_TABLE, row)

    def commit_transition(
        self,
        document_type: str,
        document_id: str,
        expected: str,
        next_status: str,
        updates: dict[str, Any],
        audit_row: dict[str, Any],
    ) -> bool:
        # One Postgres function call: conditional update and audit insert
        # commit or roll back together.
        params = {
            "p_document_type": document_type,
            "p_document_id": document_id,
            "p_expected": expected,
            "p_next": next_status,
            "p_updates": dict(updates),
            "p_audit": {"id": str(uuid4()), **audit_row},
        }
        try:
            resp = self.client.rpc(self.commit_rpc, params).execute()
        except Exception as exc:
            raise RepositoryError(f"Commit failed for document {document_id}: {exc}") from exc
        data = getattr(resp, "data", None)
        if isinstance(data, list):
            data = data[0] if data else False
        if isinstance(data, dict):
            data = next(iter(data.values()), False)
        return bool(data)

    def list_audit(self, document_type: str, document_id: str) -> list[dict[str, Any]]:
        try:
            return exec_query(
                self.client.table(AUDIT_TABLE)
                .select("*")
                .eq("document_type", document_type)
                .eq("document_id", document_id)
                .order("timestamp")
                .order("seq")
            )
        except Exception as exc:
            raise RepositoryError(f"Audit read failed for document {document_id}: {exc}") from exc

    def claim_side_effect(self, dedup_key: str, document_id: str, edge_id: str, kind: str) -> bool:
        row = {
            "dedup_key": dedup_key,
            "document_id": document_id,
            "edge_id": edge_id,
            "kind": kind,
            "status": SIDE_EFFECT_CLAIMED,
        }
        try:
            exec_query(self.client.table(SIDE_EFFECTS_TABLE).insert(row))
        except Exception as exc:
            if _is_unique_violation(exc):
                return False
            raise RepositoryError(f"Side-effect claim failed for {dedup_key}: {exc}") from exc
        return True

    def complete_side_effect(self, dedup_key: str) -> None:
        try:
            exec_query(
                self.client.table(SIDE_EFFECTS_TABLE).update({"status": SIDE_EFFECT_DONE}).eq("dedup_key", dedup_key)
            )
        except Exception as exc:
            raise RepositoryError(f"Side-effect completion failed for {dedup_key}: {exc}") from exc

    def release_side_effect(self, dedup_key: str) -> None:
        try:
            exec_query(
                self.client.table(SIDE_EFFECTS_TABLE)
                .delete()
                .eq("dedup_key", dedup_key)
                .eq("status", SIDE_EFFECT_CLAIMED)
            )
        except Exception as exc:
            raise RepositoryError(f"Side-effect release failed for {dedup_key}: {exc}") from exc

    def set_parent_flag(self, table: str, record_id: str, column: str, value: Any) -> dict[str, Any]:
        try:
            out = exec_query(
                self.client.table(table).update({column: value, "updated_at": _utc_now()}).eq("id", record_id)
            )
        except Exception as exc:
            raise RepositoryError(f"Flag update failed for {table}/{record_id}: {exc}") from exc
        if not out:
            raise RepositoryError(f"Parent record not found: {table}/{record_id}")
        return out[0]

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any] | None:
        try:
            return self._insert_one(NOTIFICATIONS_TABLE, row)
        except RepositoryError as exc:
            if _is_unique_violation(exc.__cause__ or exc):
                return None
            raise

    def list_notifications(self, document_id: str | None = None) -> list[dict[str, Any]]:
        q = self.client.table(NOTIFICATIONS_TABLE).select("*").order("created_at")
        if document_id:
            q = q.eq("document_id", document_id)
        try:
            return exec_query(q)
        except Exception as exc:
            raise RepositoryError(f"Notification read failed: {exc}") from exc


def build_repository(cfg: Settings | None = None) -> tuple[WorkflowRepository, bool, str | None]:
    cfg = cfg or settings
    if cfg.persistence_backend == "memory":
        return InMemoryRepository(), False, None

    client, err = get_supabase_client(cfg)
    if client is None:
        if cfg.persistence_backend == "supabase":
            raise RepositoryError(f"Supabase persistence requested but unavailable: {err}")
        logger.warning("Supabase client unavailable (%s); falling back to in-memory repository", err)
        return InMemoryRepository(), False, f"Supabase client unavailable ({err}); using in-memory repository."

    try:
        # Connectivity + schema check.
        client.table(DOCUMENTS_TABLE).select("id").limit(1).execute()
    except Exception as exc:
        if cfg.persistence_backend == "supabase":
            raise RepositoryError(f"Supabase unavailable or schema missing: {exc}") from exc
        logger.warning("Supabase schema check failed (%s); falling back to in-memory repository", exc)
        return (
            InMemoryRepository(),
            False,
            f"Supabase unavailable or schema mismatch ({exc}). Run `db/schema.sql` and restart. "
            "Using in-memory repository.",
        )
    return SupabaseRepository(client, commit_rpc=cfg.workflow_commit_rpc), True, None
