"""Tests for the transition executor (WorkflowService)."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from freightops.domain.capabilities import Actor
from freightops.domain.errors import (
    AuditAppendError,
    DocumentNotEditableError,
    DocumentNotFoundError,
    InsufficientCapabilityError,
    NoSuchTransitionError,
    PersistenceError,
    SelfApprovalForbiddenError,
    StaleStateError,
)
from freightops.domain.guard import AuthorizationDecision, WorkflowGuard
from freightops.domain.models import AuditAction
from freightops.infra.repositories import InMemoryRepository, RepositoryError
from freightops.services.notification_service import NotificationService
from freightops.services.side_effects import OUTCOME_APPLIED, OUTCOME_FAILED, OUTCOME_SCHEDULED, SideEffectDispatcher
from freightops.services.workflow_service import WorkflowService


DV = "disbursement-voucher"


class RacingRepository(InMemoryRepository):
    """Holds every commit until both racers have read the document."""

    def __init__(self):
        super().__init__()
        self.barrier = None

    def commit_transition(self, *args, **kwargs):
        if self.barrier is not None:
            self.barrier.wait()
        return super().commit_transition(*args, **kwargs)


class BrokenCommitRepository(InMemoryRepository):
    def commit_transition(self, *args, **kwargs):
        raise RepositoryError("connection reset")


class BrokenAuditRepository(InMemoryRepository):
    def append_audit(self, row):
        raise RepositoryError("audit table unavailable")


class EdgelessGuard(WorkflowGuard):
    """Allows everything without naming the edge."""

    def authorize(self, *args, **kwargs):
        return AuthorizationDecision.allow()


class BrokenReadRepository(InMemoryRepository):
    def __init__(self):
        super().__init__()
        self.broken = False

    def get_document(self, document_type, document_id):
        if self.broken:
            raise RepositoryError("statement timeout")
        return super().get_document(document_type, document_id)


def _advance_to_checked(service, voucher, maker, checker):
    service.transition(DV, voucher["id"], "draft", "pending_check", maker)
    service.transition(DV, voucher["id"], "pending_check", "checked", checker)


class TestVoucherScenarios:
    """The maker-checker-approver walk of a disbursement voucher"""

    def test_maker_submits_own_draft(self, service, voucher, maker):
        """Scenario 1: submit from draft succeeds with one audit entry"""
        outcome = service.transition(DV, voucher["id"], "draft", "pending_check", maker)

        assert outcome.new_status == "pending_check"
        assert service.get_document(DV, voucher["id"])["status"] == "pending_check"
        history = service.history(DV, voucher["id"])
        assert len(history) == 1
        assert history[0].action == AuditAction.SUCCESS
        assert history[0].actor_id == maker.id

    def test_creator_cannot_check_own_voucher(self, service, voucher, maker):
        """Scenario 2: the creator is refused even with the check flag"""
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        flagged_maker = Actor.of(maker.id, maker.role, flags=["can_check"])

        with pytest.raises(SelfApprovalForbiddenError):
            service.transition(DV, voucher["id"], "pending_check", "checked", flagged_maker)

        assert service.get_document(DV, voucher["id"])["status"] == "pending_check"
        assert service.history(DV, voucher["id"])[-1].action == AuditAction.REJECT

    def test_checker_checks(self, service, voucher, maker, checker):
        """Scenario 3: a different checker moves it to checked"""
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        outcome = service.transition(DV, voucher["id"], "pending_check", "checked", checker)

        assert outcome.new_status == "checked"
        doc = service.get_document(DV, voucher["id"])
        assert doc["checked_by"] == checker.id
        assert doc["checked_at"]

    def test_concurrent_approvals_single_winner(self, maker, checker, approver, second_approver):
        """Scenario 4: two approvers racing from checked, exactly one wins"""
        repo = RacingRepository()
        service = WorkflowService(repo)
        voucher = service.create_document(DV, maker)
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        service.transition(DV, voucher["id"], "pending_check", "checked", checker)
        repo.barrier = threading.Barrier(2, timeout=5)

        def approve(actor):
            return service.request_transition(DV, voucher["id"], "checked", "approved", actor.id, actor.role)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(approve, [approver, second_approver]))

        assert sorted(r.ok for r in results) == [False, True]
        loser = next(r for r in results if not r.ok)
        winner_index = next(i for i, r in enumerate(results) if r.ok)
        assert loser.error == "StaleState"
        doc = service.get_document(DV, voucher["id"])
        assert doc["status"] == "approved"
        assert doc["approved_by"] == [approver, second_approver][winner_index].id

        history = service.history(DV, voucher["id"])
        assert [e.action for e in history].count(AuditAction.SUCCESS) == 3
        assert [e.action for e in history].count(AuditAction.ATTEMPT) == 1

    def test_rejection_stamps_and_notifies_creator(self, service, repo, voucher, maker, checker):
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        service.transition(DV, voucher["id"], "pending_check", "rejected", checker, comment="Receipt missing")

        doc = service.get_document(DV, voucher["id"])
        assert doc["status"] == "rejected"
        assert doc["rejected_by"] == checker.id
        notes = [n for n in repo.list_notifications(voucher["id"]) if n["recipient"] == maker.id]
        assert len(notes) == 1
        assert "Receipt missing" in notes[0]["message"]

    def test_full_walk_keeps_duties_segregated(self, service, voucher, maker, checker, approver):
        _advance_to_checked(service, voucher, maker, checker)
        service.transition(DV, voucher["id"], "checked", "approved", approver)

        doc = service.get_document(DV, voucher["id"])
        assert doc["submitted_by"] == maker.id
        assert doc["checked_by"] != doc["created_by"]
        assert doc["approved_by"] != doc["created_by"]

    def test_approval_publishes_event(self, service, published, voucher, maker, checker, approver):
        _advance_to_checked(service, voucher, maker, checker)
        outcome = service.transition(DV, voucher["id"], "checked", "approved", approver)

        assert [o.status for o in outcome.side_effects] == [OUTCOME_APPLIED, OUTCOME_APPLIED]
        assert [e["event_type"] for e in published] == ["disbursement.approved"]
        assert published[0]["document_id"] == voucher["id"]


class TestOtherDocumentTypes:
    def test_signed_handover_cannot_be_archived(self, service, job_order, maker, approver):
        """Scenario 5: signed is terminal"""
        doc = service.create_document("handover-certificate", maker, payload={"jo_id": job_order["id"]})
        service.transition("handover-certificate", doc["id"], "draft", "pending_signature", maker)
        service.transition("handover-certificate", doc["id"], "pending_signature", "signed", approver)

        with pytest.raises(NoSuchTransitionError):
            service.transition("handover-certificate", doc["id"], "signed", "archived", approver)
        assert service.get_document("handover-certificate", doc["id"])["status"] == "signed"

    def test_generated_document_walk(self, service, maker, approver):
        """Scenario 6: draft -> final -> sent -> archived, one entry per step"""
        doc = service.create_document("generated-document", maker)
        steps = [("draft", "final", approver), ("final", "sent", maker), ("sent", "archived", approver)]
        for count, (src, dst, actor) in enumerate(steps, start=1):
            service.transition("generated-document", doc["id"], src, dst, actor)
            assert len(service.history("generated-document", doc["id"])) == count

        with pytest.raises(NoSuchTransitionError):
            service.transition("generated-document", doc["id"], "archived", "final", approver)
        assert len(service.history("generated-document", doc["id"])) == 4

    def test_delivery_sets_parent_flag(self, service, repo, job_order, maker, approver):
        doc = service.create_document("delivery-note", maker, payload={"jo_id": job_order["id"]})
        service.transition("delivery-note", doc["id"], "issued", "in_transit", maker)
        outcome = service.transition("delivery-note", doc["id"], "in_transit", "delivered", approver)

        assert outcome.side_effect_failures == []
        assert repo.get_parent_record("job_orders", job_order["id"])["has_surat_jalan"] is True

    def test_failed_side_effect_does_not_roll_back(self, service, maker, approver):
        doc = service.create_document("delivery-note", maker)
        service.transition("delivery-note", doc["id"], "issued", "in_transit", maker)
        outcome = service.transition("delivery-note", doc["id"], "in_transit", "delivered", approver)

        assert [o.status for o in outcome.side_effects] == [OUTCOME_FAILED]
        assert service.get_document("delivery-note", doc["id"])["status"] == "delivered"

    def test_work_permit_two_stage_approval(self, service, repo, maker, approver):
        supervisor = Actor.of("spv-1", "supervisor")
        permit = service.create_document("work-permit", maker, payload={"number": "PTW-0007"})
        service.transition("work-permit", permit["id"], "pending", "supervisor_approved", supervisor)
        service.transition("work-permit", permit["id"], "supervisor_approved", "approved", approver)

        doc = service.get_document("work-permit", permit["id"])
        assert doc["checked_by"] == supervisor.id
        assert doc["approved_by"] == approver.id
        recipients = {(n["recipient_type"], n["recipient"]) for n in repo.list_notifications(permit["id"])}
        assert recipients == {("role", "hse"), ("user", maker.id)}


class TestActorStamps:
    """Only edges that submit, check, approve or reject stamp the document"""

    def test_voucher_stamps_each_stage(self, service, voucher, maker, checker, approver):
        _advance_to_checked(service, voucher, maker, checker)
        service.transition(DV, voucher["id"], "checked", "approved", approver)

        doc = service.get_document(DV, voucher["id"])
        assert (doc["submitted_by"], doc["checked_by"], doc["approved_by"]) == (maker.id, checker.id, approver.id)
        assert doc["rejected_by"] is None

    def test_archiving_keeps_the_approver(self, service, maker, approver, second_approver):
        doc = service.create_document("generated-document", maker)
        service.transition("generated-document", doc["id"], "draft", "final", approver)
        approved_at = service.get_document("generated-document", doc["id"])["approved_at"]

        service.transition("generated-document", doc["id"], "final", "archived", second_approver)

        archived = service.get_document("generated-document", doc["id"])
        assert archived["status"] == "archived"
        assert archived["approved_by"] == approver.id
        assert archived["approved_at"] == approved_at

    def test_unsigned_handover_has_no_approver(self, service, job_order, maker, approver):
        doc = service.create_document("handover-certificate", maker, payload={"jo_id": job_order["id"]})
        service.transition("handover-certificate", doc["id"], "draft", "pending_signature", maker)
        service.transition("handover-certificate", doc["id"], "pending_signature", "archived", approver)

        archived = service.get_document("handover-certificate", doc["id"])
        assert archived["submitted_by"] == maker.id
        assert archived["approved_by"] is None
        assert archived["approved_at"] is None

    def test_returned_delivery_has_no_approver(self, service, maker, approver):
        doc = service.create_document("delivery-note", maker)
        service.transition("delivery-note", doc["id"], "issued", "in_transit", maker)
        service.transition("delivery-note", doc["id"], "in_transit", "returned", approver)

        assert service.get_document("delivery-note", doc["id"])["approved_by"] is None

    def test_completed_permit_keeps_the_approver(self, service, maker, approver, owner):
        supervisor = Actor.of("spv-1", "supervisor")
        permit = service.create_document("work-permit", maker)
        service.transition("work-permit", permit["id"], "pending", "supervisor_approved", supervisor)
        service.transition("work-permit", permit["id"], "supervisor_approved", "approved", approver)
        service.transition("work-permit", permit["id"], "approved", "active", maker)
        service.transition("work-permit", permit["id"], "active", "completed", owner)

        doc = service.get_document("work-permit", permit["id"])
        assert doc["status"] == "completed"
        assert doc["approved_by"] == approver.id
        assert doc["submitted_by"] is None


class TestStaleState:
    def test_outdated_expected_from(self, service, voucher, maker):
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)

        with pytest.raises(StaleStateError) as excinfo:
            service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        assert excinfo.value.current_status == "pending_check"
        assert service.history(DV, voucher["id"])[-1].action == AuditAction.ATTEMPT

    def test_request_transition_reports_current_status(self, service, voucher, maker):
        result = service.request_transition(DV, voucher["id"], "checked", "approved", "a-1", "director")
        assert result.to_dict() == {
            "ok": False,
            "error": "StaleState",
            "detail": result.detail,
            "current_status": "draft",
        }

    def test_request_transition_unknown_type(self, service):
        result = service.request_transition("invoice", "inv-1", "draft", "sent", "maker-1", "finance")
        assert result.ok is False
        assert result.error == "NoSuchTransition"
        assert "invoice" in result.detail

    def test_guard_allow_without_edge_is_refused(self, repo, voucher, maker):
        service = WorkflowService(repo, guard=EdgelessGuard())

        with pytest.raises(NoSuchTransitionError):
            service.transition(DV, voucher["id"], "draft", "pending_check", maker)

        assert service.get_document(DV, voucher["id"])["status"] == "draft"
        assert [e.action for e in service.history(DV, voucher["id"])] == [AuditAction.REJECT]


class TestAuditCompleteness:
    """One entry per call; success entries match status changes"""

    def test_every_call_audited(self, service, voucher, maker, checker, approver):
        calls = [
            (voucher["id"], "draft", "pending_check", maker, None),  # ok
            (voucher["id"], "draft", "pending_check", maker, None),  # stale
            (voucher["id"], "pending_check", "checked", Actor.of(maker.id, "owner"), None),  # self approval
            (voucher["id"], "pending_check", "approved", approver, None),  # no such edge
            (voucher["id"], "pending_check", "rejected", checker, ""),  # comment required
            (voucher["id"], "pending_check", "checked", approver, None),  # insufficient
            (voucher["id"], "pending_check", "checked", checker, None),  # ok
            ("missing-id", "draft", "pending_check", maker, None),  # not found
        ]
        results = [
            service.request_transition(DV, doc_id, src, dst, actor.id, actor.role, comment=comment)
            for doc_id, src, dst, actor, comment in calls
        ]

        assert [r.error for r in results] == [
            None,
            "StaleState",
            "SelfApprovalForbidden",
            "NoSuchTransition",
            "CommentRequired",
            "InsufficientCapability",
            None,
            "DocumentNotFound",
        ]
        history = service.history(DV, voucher["id"])
        assert len(history) == len(calls) - 1
        assert len(service.history(DV, "missing-id")) == 1
        assert [e.action for e in history].count(AuditAction.SUCCESS) == 2

    def test_history_is_chronological(self, service, voucher, maker, checker):
        _advance_to_checked(service, voucher, maker, checker)
        history = service.history(DV, voucher["id"])
        assert [(e.from_status, e.to_status) for e in history] == [
            ("draft", "pending_check"),
            ("pending_check", "checked"),
        ]
        assert history[0].seq < history[1].seq


class TestPersistenceFailures:
    def test_commit_failure_is_persistence_error(self, maker):
        repo = BrokenCommitRepository()
        service = WorkflowService(repo)
        voucher = service.create_document(DV, maker)

        with pytest.raises(PersistenceError):
            service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        assert service.get_document(DV, voucher["id"])["status"] == "draft"
        assert [e.action for e in service.history(DV, voucher["id"])] == [AuditAction.ATTEMPT]

    def test_audit_failure_fails_the_request(self, maker, checker):
        repo = BrokenAuditRepository()
        service = WorkflowService(repo)
        voucher = service.create_document(DV, maker)

        with pytest.raises(AuditAppendError):
            service.transition(DV, voucher["id"], "draft", "checked", checker)

    def test_read_failure_maps_to_persistence_error(self, maker):
        repo = BrokenReadRepository()
        service = WorkflowService(repo)
        voucher = service.create_document(DV, maker)
        repo.broken = True

        result = service.request_transition(DV, voucher["id"], "draft", "pending_check", maker.id, maker.role)
        assert result.ok is False
        assert result.error == "PersistenceError"


class TestDocuments:
    def test_created_in_initial_status(self, service, maker):
        doc = service.create_document("delivery-note", maker, payload={"jo_id": "jo-1"})
        assert doc["status"] == "issued"
        assert doc["created_by"] == maker.id
        assert service.history("delivery-note", doc["id"]) == []

    def test_create_needs_capability(self, service, approver):
        with pytest.raises(InsufficientCapabilityError):
            service.create_document(DV, approver)

    def test_missing_document(self, service):
        with pytest.raises(DocumentNotFoundError):
            service.get_document(DV, "nope")

    def test_edit_in_draft_merges_payload(self, service, voucher, maker):
        updated = service.edit_document(DV, voucher["id"], maker, {"amount": 2000000, "memo": "fuel"})
        assert updated["payload"] == {"number": "BKK-2026-0001", "amount": 2000000, "memo": "fuel"}
        assert updated["status"] == "draft"

    def test_edit_after_submit_refused(self, service, voucher, maker):
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        with pytest.raises(DocumentNotEditableError):
            service.edit_document(DV, voucher["id"], maker, {"amount": 1})
        assert service.get_document(DV, voucher["id"])["payload"]["amount"] == 1500000

    def test_available_transitions_for_actor(self, service, voucher, maker, checker):
        service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        assert [e.to_status for e in service.available_transitions(DV, voucher["id"], checker)] == [
            "checked",
            "rejected",
        ]
        assert service.available_transitions(DV, voucher["id"], maker) == []


class TestAsyncSideEffects:
    def test_effects_run_on_executor(self, repo, bus, voucher, maker):
        executor = ThreadPoolExecutor(max_workers=2)
        dispatcher = SideEffectDispatcher(repo, NotificationService(repo), bus, executor=executor)
        service = WorkflowService(repo, event_bus=bus, dispatcher=dispatcher)

        outcome = service.transition(DV, voucher["id"], "draft", "pending_check", maker)
        service.close()

        assert [o.status for o in outcome.side_effects] == [OUTCOME_SCHEDULED]
        recipients = sorted(n["recipient"] for n in repo.list_notifications(voucher["id"]))
        assert recipients == ["finance_manager", "manager"]

    def test_close_shuts_down_executor(self, repo, bus):
        executor = ThreadPoolExecutor(max_workers=1)
        dispatcher = SideEffectDispatcher(repo, NotificationService(repo), bus, executor=executor)
        service = WorkflowService(repo, event_bus=bus, dispatcher=dispatcher)

        service.close()

        with pytest.raises(RuntimeError):
            executor.submit(print)

    def test_close_without_executor(self, service):
        service.close()
        assert service.dispatcher.executor is None
