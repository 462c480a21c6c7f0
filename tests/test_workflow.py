"""
Workflow engine tests - stage routing, terminal states, audit trail and notification hand-off.
Every test runs against both the in-memory and the SQLite store.
"""

import pytest

from helpers import CERTIFICATION_STAGES, COC_STAGES, certification_payload, coc_payload, principal
from src.core.authz import AuthorizationGate
from src.core.errors import ConflictError, ForbiddenError, NotFoundError, WorkflowValidationError
from src.core.forms import build_form_types
from src.core.notify import QUEUED, SKIPPED
from src.core.schema import APPROVED, COMPLETED, PENDING, REJECTED
from src.core.workflow import WorkflowEngine, approver_roles

STAGE_HOLDERS = {"finance": "fin1", "manager": "mgr1", "vp": "vp1", "administrator": "admin1"}

SUBMITTER = principal("alice", "user")


def actor(stage):
    return principal(STAGE_HOLDERS[stage], stage)


class TestSubmit:
    """Test form submission."""

    def test_submit_coc_starts_at_first_stage(self, engine):
        result = engine.submit("coc", SUBMITTER, coc_payload())
        form = result.form

        assert form.form_type == "coc"
        assert form.submitted_by == "alice"
        assert form.status == "Pending Finance"
        assert form.current_approver == "finance"
        assert form.stage_statuses == {"finance": PENDING, "manager": PENDING, "vp": PENDING}
        assert form.audit_trail == []
        assert result.notification == QUEUED

    def test_submit_certification_starts_with_manager(self, engine):
        form = engine.submit("certification", SUBMITTER, certification_payload()).form

        assert form.status == "Pending Manager"
        assert list(form.stage_statuses) == CERTIFICATION_STAGES

    def test_submitted_form_is_persisted(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        stored = engine.store.get(form.id)
        assert stored.payload["course_name"] == "Workplace Safety"
        assert stored.current_approver == "finance"

    def test_submit_unknown_form_type(self, engine):
        with pytest.raises(WorkflowValidationError) as exc_info:
            engine.submit("timesheet", SUBMITTER, {})

        assert exc_info.value.errors[0]["field"] == "form_type"

    def test_submit_invalid_payload_reports_fields(self, engine):
        with pytest.raises(WorkflowValidationError) as exc_info:
            engine.submit("coc", SUBMITTER, coc_payload(score=140))

        fields = [e["field"] for e in exc_info.value.errors]
        assert "score" in fields
        assert engine.store.list_all() == []

    def test_submit_requires_authentication(self, engine):
        with pytest.raises(ForbiddenError):
            engine.submit("coc", None, coc_payload())

    def test_submit_notifies_first_stage_holders(self, engine, dispatcher, notifier):
        engine.submit("coc", SUBMITTER, coc_payload())
        assert dispatcher.flush()

        assert [(address, kind) for address, kind, _ in notifier.sent] == [("fin1@example.com", "submitted")]
        assert notifier.sent[0][2]["title"] == "Workplace Safety"


class TestApprovalSequence:
    """Test advancing through every stage."""

    def test_coc_full_approval(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, actor("finance"), "approve").form
        assert form.status == "Pending Manager"
        assert form.current_approver == "manager"
        assert form.stage_statuses["finance"] == APPROVED

        form = engine.decide(form.id, actor("manager"), "approve").form
        assert form.status == "Pending Vp"
        assert form.current_approver == "vp"

        form = engine.decide(form.id, actor("vp"), "approve").form
        assert form.status == APPROVED
        assert form.current_approver == COMPLETED
        assert form.stage_statuses == {"finance": APPROVED, "manager": APPROVED, "vp": APPROVED}
        assert len(form.audit_trail) == 3

    @pytest.mark.parametrize("form_type,payload_factory,stages", [
        ("coc", coc_payload, COC_STAGES),
        ("certification", certification_payload, CERTIFICATION_STAGES),
    ])
    def test_every_stage_in_order_ends_approved(self, engine, form_type, payload_factory, stages):
        form = engine.submit(form_type, SUBMITTER, payload_factory()).form

        for stage in stages:
            assert form.current_approver == stage
            form = engine.decide(form.id, actor(stage), "approve").form

        assert form.status == APPROVED
        assert form.current_approver == COMPLETED
        assert [e.role for e in form.audit_trail] == stages
        assert all(e.action == APPROVED for e in form.audit_trail)

    def test_custom_stage_sequence(self, store, directory, dispatcher):
        form_types_two_stage = build_form_types({"coc": ["manager", "vp"], "certification": CERTIFICATION_STAGES})
        engine = WorkflowEngine(store=store, directory=directory, dispatcher=dispatcher,
                                form_types=form_types_two_stage)
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        assert form.current_approver == "manager"

        form = engine.decide(form.id, actor("manager"), "approve").form
        form = engine.decide(form.id, actor("vp"), "approve").form

        assert form.status == APPROVED
        assert len(form.audit_trail) == 2

    def test_action_is_case_insensitive(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, actor("finance"), "  APPROVE ").form

        assert form.current_approver == "manager"

    def test_same_person_holding_two_roles_acts_per_stage(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, principal("pat", "finance"), "approve").form
        assert form.current_approver == "manager"

        # Same human, different role claim: still a separate call per stage
        form = engine.decide(form.id, principal("pat", "manager"), "approve").form
        assert form.current_approver == "vp"
        assert [e.performed_by for e in form.audit_trail] == ["pat", "pat"]


class TestRejection:
    """Test rejection at any stage."""

    def test_reject_after_first_approval(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        engine.decide(form.id, actor("finance"), "approve")

        form = engine.decide(form.id, actor("manager"), "reject", reason="missing docs").form

        assert form.status == REJECTED
        assert form.rejection_reason == "missing docs"
        assert form.current_approver == COMPLETED
        assert form.stage_statuses == {"finance": APPROVED, "manager": REJECTED, "vp": PENDING}
        assert len(form.audit_trail) == 2
        assert form.audit_trail[-1].reason == "missing docs"

    @pytest.mark.parametrize("reject_at", range(len(CERTIFICATION_STAGES)))
    def test_reject_at_any_stage_is_terminal(self, engine, reject_at):
        form = engine.submit("certification", SUBMITTER, certification_payload()).form

        for stage in CERTIFICATION_STAGES[:reject_at]:
            form = engine.decide(form.id, actor(stage), "approve").form
        form = engine.decide(form.id, actor(CERTIFICATION_STAGES[reject_at]), "reject").form

        assert form.status == REJECTED
        assert form.current_approver == COMPLETED
        assert len(form.audit_trail) == reject_at + 1

    def test_reject_without_reason_allowed_by_default(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, actor("finance"), "reject").form

        assert form.status == REJECTED
        assert form.rejection_reason is None

    def test_reject_reason_required_when_configured(self, engine):
        engine.require_rejection_reason = True
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        with pytest.raises(WorkflowValidationError) as exc_info:
            engine.decide(form.id, actor("finance"), "reject", reason="   ")

        assert exc_info.value.errors[0]["field"] == "reason"
        assert engine.store.get(form.id).current_approver == "finance"


class TestDecisionGuards:
    """Test the preconditions of decide."""

    def test_wrong_role_is_forbidden_and_record_unchanged(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        before = engine.store.get(form.id)

        with pytest.raises(ForbiddenError):
            engine.decide(form.id, actor("vp"), "approve")

        after = engine.store.get(form.id)
        assert after.current_approver == "finance"
        assert after.status == before.status
        assert after.audit_trail == []
        assert after.version == before.version

    def test_submitter_cannot_approve(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        with pytest.raises(ForbiddenError):
            engine.decide(form.id, SUBMITTER, "approve")

    def test_unknown_form_is_not_found(self, engine):
        with pytest.raises(NotFoundError):
            engine.decide("does-not-exist", actor("finance"), "approve")

    def test_invalid_action(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        with pytest.raises(WorkflowValidationError) as exc_info:
            engine.decide(form.id, actor("finance"), "escalate")

        assert exc_info.value.errors[0]["field"] == "action"

    @pytest.mark.parametrize("final_action", ["approve", "reject"])
    def test_terminal_record_yields_conflict(self, engine, final_action):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        if final_action == "approve":
            for stage in COC_STAGES:
                form = engine.decide(form.id, actor(stage), "approve").form
        else:
            form = engine.decide(form.id, actor("finance"), "reject", reason="no").form
        terminal = engine.store.get(form.id)

        for stage in COC_STAGES + ["administrator"]:
            with pytest.raises(ConflictError):
                engine.decide(form.id, actor(stage), "approve")

        assert engine.store.get(form.id).to_dict() == terminal.to_dict()

    @pytest.mark.parametrize("action", ["approve", "reject"])
    def test_decided_stage_yields_conflict(self, engine, action):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        engine.decide(form.id, actor("finance"), "approve")
        before = engine.store.get(form.id)

        with pytest.raises(ConflictError) as exc_info:
            engine.decide(form.id, principal("fin2", "finance"), action)

        assert exc_info.value.details["current_approver"] == "manager"
        after = engine.store.get(form.id)
        assert after.version == before.version
        assert len(after.audit_trail) == 1

    def test_later_stage_role_is_still_forbidden(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        with pytest.raises(ForbiddenError):
            engine.decide(form.id, actor("manager"), "approve")

    def test_admin_cannot_decide_without_override(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        with pytest.raises(ForbiddenError):
            engine.decide(form.id, actor("administrator"), "approve")

    def test_admin_override_acts_as_current_stage(self, engine, form_types):
        engine.gate = AuthorizationGate(approver_roles(form_types), admin_override=True)
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, actor("administrator"), "approve").form

        assert form.current_approver == "manager"
        assert form.stage_statuses["finance"] == APPROVED
        assert form.audit_trail[0].role == "finance"
        assert form.audit_trail[0].performed_by == "admin1"


class TestAuditTrail:
    """Test that the audit trail is append-only and order-preserving."""

    def test_reread_returns_same_entries_in_order(self, engine):
        form = engine.submit("certification", SUBMITTER, certification_payload()).form
        snapshots = []
        for stage in CERTIFICATION_STAGES[:3]:
            form = engine.decide(form.id, actor(stage), "approve").form
            snapshots.append([e.to_dict() for e in form.audit_trail])

        reread = engine.store.get(form.id)
        assert [e.to_dict() for e in reread.audit_trail] == snapshots[-1]
        for earlier in snapshots:
            assert [e.to_dict() for e in reread.audit_trail][:len(earlier)] == earlier

    def test_entries_record_actor_identity(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        form = engine.decide(form.id, actor("finance"), "approve", reason="  budget ok ").form

        entry = form.audit_trail[0]
        assert entry.role == "finance"
        assert entry.action == APPROVED
        assert entry.performed_by == "fin1"
        assert entry.reason == "budget ok"
        assert entry.timestamp is not None


class TestListings:
    """Test owner, administrator and pending listings."""

    def test_list_forms_returns_own_forms_only(self, engine):
        engine.submit("coc", SUBMITTER, coc_payload())
        engine.submit("coc", principal("bob", "user"), coc_payload(course_name="Other"))

        forms = engine.list_forms(SUBMITTER)

        assert [f.submitted_by for f in forms] == ["alice"]

    def test_admin_lists_every_form(self, engine):
        engine.submit("coc", SUBMITTER, coc_payload())
        engine.submit("coc", principal("bob", "user"), coc_payload(course_name="Other"))

        assert len(engine.list_forms(actor("administrator"))) == 2

    def test_pending_follows_current_approver(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        assert [f.id for f in engine.list_pending(actor("finance"))] == [form.id]
        assert engine.list_pending(actor("manager")) == []

        engine.decide(form.id, actor("finance"), "approve")

        assert engine.list_pending(actor("finance")) == []
        assert [f.id for f in engine.list_pending(actor("manager"))] == [form.id]

    def test_terminal_forms_are_not_pending(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        engine.decide(form.id, actor("finance"), "reject", reason="no")

        for stage in COC_STAGES:
            assert engine.list_pending(actor(stage)) == []

    def test_plain_user_cannot_list_pending(self, engine):
        with pytest.raises(ForbiddenError):
            engine.list_pending(SUBMITTER)

    def test_get_form_visibility(self, engine):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        assert engine.get_form(form.id, SUBMITTER).id == form.id
        assert engine.get_form(form.id, actor("vp")).id == form.id
        with pytest.raises(ForbiddenError):
            engine.get_form(form.id, principal("bob", "user"))


class TestNotifications:
    """Test post-commit notification routing."""

    def test_advance_notifies_next_stage(self, engine, dispatcher, notifier):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        result = engine.decide(form.id, actor("finance"), "approve")
        assert dispatcher.flush()

        assert result.notification == QUEUED
        advanced = [(address, context) for address, kind, context in notifier.sent if kind == "advanced"]
        assert [address for address, _ in advanced] == ["mgr1@example.com"]
        assert advanced[0][1]["performed_by"] == "fin1"

    def test_intermediate_approval_tells_submitter(self, engine, dispatcher, notifier):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        engine.decide(form.id, actor("finance"), "approve")
        assert dispatcher.flush()

        assert [(address, kind) for address, kind, _ in notifier.sent] == [
            ("fin1@example.com", "submitted"),
            ("mgr1@example.com", "advanced"),
            ("alice@example.com", "progress"),
        ]
        assert notifier.sent[-1][2]["performed_by"] == "fin1"

    def test_progress_notice_does_not_change_disposition(self, engine, dispatcher):
        form = engine.submit("coc", principal("carol", "user"), coc_payload()).form

        result = engine.decide(form.id, actor("finance"), "approve")

        assert result.notification == QUEUED
        assert dispatcher.stats["skipped"] == 1

    def test_terminal_notifies_submitter(self, engine, dispatcher, notifier):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        engine.decide(form.id, actor("finance"), "reject", reason="missing docs")
        assert dispatcher.flush()

        address, kind, context = notifier.sent[-1]
        assert address == "alice@example.com"
        assert kind == "rejected"
        assert context["reason"] == "missing docs"

    def test_final_approval_notifies_submitter(self, engine, dispatcher, notifier):
        form = engine.submit("coc", SUBMITTER, coc_payload()).form
        for stage in COC_STAGES:
            engine.decide(form.id, actor(stage), "approve")
        assert dispatcher.flush()

        assert notifier.sent[-1][:2] == ("alice@example.com", "approved")

    def test_missing_role_holder_skips_but_commits(self, engine, dispatcher):
        form = engine.submit("coc", principal("carol", "user"), coc_payload()).form
        engine.directory.assign_role("mgr1", "user")

        result = engine.decide(form.id, actor("finance"), "approve")

        assert result.notification == SKIPPED
        assert engine.store.get(form.id).current_approver == "manager"
        assert dispatcher.stats["skipped"] == 2

    def test_submitter_without_email_skips(self, engine):
        form = engine.submit("coc", principal("carol", "user"), coc_payload()).form

        result = engine.decide(form.id, actor("finance"), "reject")

        assert result.notification == SKIPPED
        assert engine.store.get(form.id).status == REJECTED

    def test_notifier_failure_does_not_affect_transition(self, engine, dispatcher, notifier):
        notifier.fail_for.add("mgr1@example.com")
        form = engine.submit("coc", SUBMITTER, coc_payload()).form

        result = engine.decide(form.id, actor("finance"), "approve")
        assert dispatcher.flush()

        assert result.form.current_approver == "manager"
        assert engine.store.get(form.id).current_approver == "manager"
        assert dispatcher.stats["failed"] == 1


class TestRoleAdministration:
    """Test role assignment through the engine."""

    def test_admin_assigns_role(self, engine):
        user, created = engine.assign_role(actor("administrator"), "dave", "finance", "dave@example.com")

        assert created is True
        assert user.role == "finance"
        assert "dave" in [u.username for u in engine.list_users(actor("administrator"))]

    def test_non_admin_cannot_assign_role(self, engine):
        with pytest.raises(ForbiddenError):
            engine.assign_role(actor("manager"), "dave", "finance")

        assert engine.directory.lookup("dave") is None

    def test_non_admin_cannot_list_users(self, engine):
        with pytest.raises(ForbiddenError):
            engine.list_users(SUBMITTER)
