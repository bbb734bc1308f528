from datetime import timedelta
from types import SimpleNamespace

from conftest import FakeDelivery

from engage.models import AutomationJob, AutomationRule, Message, MessageTemplate
from engage.models.types import utcnow
from engage.services import automation_service
from engage.services.automation_service import (
    DEFAULT_GREETING,
    JobStatus,
    claim_pending_jobs,
    enqueue_dispatch,
    load_enabled_rules,
    process_pending_jobs,
    render_action_text,
    run_job,
)


def _job(db):
    db.expire_all()
    return db.query(AutomationJob).one()


class TestEnqueueDispatch:
    def test_one_job_per_inbound_message(self, db, ctx, make_rule, make_contact, make_conversation):
        rule = make_rule({"type": "keyword", "keywords": ["cancelar"]})
        contact = make_contact()
        conversation = make_conversation(contact)

        assert enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1") is True
        assert enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1") is False
        db.commit()

        job = _job(db)
        assert job.status == JobStatus.PENDING
        assert job.trigger_kind == "keyword"
        assert job.attempts == 0


class TestLoadEnabledRules:
    def test_disabled_rules_are_excluded(self, db, ctx, make_rule):
        enabled = make_rule({"type": "keyword", "keywords": ["a"]})
        make_rule({"type": "keyword", "keywords": ["b"]}, is_enabled=False)

        assert [r.id for r in load_enabled_rules(db, ctx)] == [enabled.id]

    def test_welcome_rule_already_sent_to_contact_is_excluded(
        self, db, ctx, make_rule, make_contact, make_conversation
    ):
        welcome = make_rule({"type": "first_message"})
        keyword = make_rule({"type": "keyword", "keywords": ["oi"]})
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, welcome, contact, conversation, "wamid.1")
        enqueue_dispatch(db, ctx, keyword, contact, conversation, "wamid.2")
        db.commit()

        rules = load_enabled_rules(db, ctx, contact)

        assert [r.id for r in rules] == [keyword.id]


class TestClaimPendingJobs:
    def test_claims_due_jobs_only(self, db, ctx, make_rule, make_contact, make_conversation):
        rule = make_rule({"type": "keyword", "keywords": ["oi"]})
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1")
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.2")
        db.commit()
        later = db.query(AutomationJob).filter(AutomationJob.inbound_message_id == "wamid.2").one()
        later.next_attempt_at = utcnow() + timedelta(hours=1)
        db.commit()

        jobs = claim_pending_jobs(db, limit=10)

        assert [job.inbound_message_id for job in jobs] == ["wamid.1"]
        assert jobs[0].status == JobStatus.PROCESSING
        assert jobs[0].attempts == 1


class TestRenderActionText:
    def test_placeholders(self):
        rule = SimpleNamespace(action_text="Oi {{first_name}} ({{full_name}}, {{phone}})", template=None)
        contact = SimpleNamespace(name="Maria Silva", address="5511999990000")

        assert render_action_text(rule, contact) == "Oi Maria (Maria Silva, 5511999990000)"

    def test_template_body_when_no_action_text(self):
        rule = SimpleNamespace(action_text="  ", template=MessageTemplate(name="t", body="Welcome {{first_name}}"))
        contact = SimpleNamespace(name="Joao", address="1")

        assert render_action_text(rule, contact) == "Welcome Joao"

    def test_default_greeting(self):
        rule = SimpleNamespace(action_text=None, template=None)
        contact = SimpleNamespace(name=None, address="1")

        assert render_action_text(rule, contact) == DEFAULT_GREETING.replace("{{first_name}}", "")


class TestRunJob:
    def _claimed(self, db, ctx, make_rule, make_contact, make_conversation, action_text="Oi {{first_name}}"):
        rule = make_rule({"type": "keyword", "keywords": ["oi"]}, action_text=action_text)
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1")
        db.commit()
        return claim_pending_jobs(db)[0], conversation

    def test_accepted_send_records_bot_message(self, db, ctx, make_rule, make_contact, make_conversation, delivery):
        job, conversation = self._claimed(db, ctx, make_rule, make_contact, make_conversation)

        assert run_job(db, job, delivery) == JobStatus.DONE

        assert delivery.sent == [{"tenant_id": ctx.tenant_id, "to": "5511999990000", "text": "Oi Maria"}]
        message = db.query(Message).filter(Message.conversation_id == conversation.id).one()
        assert message.sender_kind == "bot"
        assert message.status == "pending"
        assert message.external_id == "wamid.out.1"

    def test_rejected_send_is_retried_later(self, db, ctx, make_rule, make_contact, make_conversation):
        job, _ = self._claimed(db, ctx, make_rule, make_contact, make_conversation)

        status = run_job(db, job, FakeDelivery(accepted=False), max_attempts=3, backoff_seconds=5)

        assert status == JobStatus.PENDING
        job = _job(db)
        assert job.last_error == "rejected by provider"
        assert job.next_attempt_at is not None
        assert db.query(Message).count() == 0

    def test_disabled_rule_is_not_sent(self, db, ctx, make_rule, make_contact, make_conversation, delivery):
        job, _ = self._claimed(db, ctx, make_rule, make_contact, make_conversation)
        rule = db.query(AutomationRule).filter(AutomationRule.id == job.rule_id).one()
        rule.is_enabled = False
        db.commit()

        assert run_job(db, job, delivery) == JobStatus.FAILED
        assert delivery.sent == []
        assert _job(db).last_error == "rule_disabled"

    def test_fails_after_max_attempts(self, db, ctx, make_rule, make_contact, make_conversation):
        job, _ = self._claimed(db, ctx, make_rule, make_contact, make_conversation)

        status = run_job(db, job, FakeDelivery(error=TimeoutError("timed out")), max_attempts=1)

        assert status == JobStatus.FAILED
        assert _job(db).last_error == "timed out"


class TestProcessPendingJobs:
    def test_worker_tick(self, db, ctx, session_factory, make_rule, make_contact, make_conversation, delivery):
        rule = make_rule({"type": "first_message"}, action_text="Bem-vindo!")
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1")
        db.commit()

        assert process_pending_jobs(session_factory, delivery) == 1
        assert process_pending_jobs(session_factory, delivery) == 0

        assert _job(db).status == JobStatus.DONE
        assert [sent["text"] for sent in delivery.sent] == ["Bem-vindo!"]


class TestStaleJobs:
    def _claimed_welcome(self, db, ctx, make_rule, make_contact, make_conversation):
        rule = make_rule({"type": "new_contact"}, action_text="Bem-vindo!")
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1")
        db.commit()
        claim_pending_jobs(db)
        return rule, contact

    def test_abandoned_job_is_claimed_again_after_lease(self, db, ctx, make_rule, make_contact, make_conversation):
        self._claimed_welcome(db, ctx, make_rule, make_contact, make_conversation)
        job = _job(db)
        job.updated_at = utcnow() - timedelta(hours=1)
        db.commit()

        jobs = claim_pending_jobs(db, lease_seconds=60)

        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.PROCESSING
        assert jobs[0].attempts == 2

    def test_job_within_lease_is_not_claimed(self, db, ctx, make_rule, make_contact, make_conversation):
        self._claimed_welcome(db, ctx, make_rule, make_contact, make_conversation)

        assert claim_pending_jobs(db, lease_seconds=60) == []

    def test_reclaimed_welcome_job_is_delivered(
        self, db, ctx, session_factory, make_rule, make_contact, make_conversation, delivery
    ):
        rule, contact = self._claimed_welcome(db, ctx, make_rule, make_contact, make_conversation)
        job = _job(db)
        job.updated_at = utcnow() - timedelta(hours=1)
        db.commit()

        assert process_pending_jobs(session_factory, delivery, lease_seconds=60) == 1

        assert _job(db).status == JobStatus.DONE
        assert [sent["text"] for sent in delivery.sent] == ["Bem-vindo!"]
        assert rule.id not in [r.id for r in load_enabled_rules(db, ctx, contact)]


class TestCrashedJobs:
    def test_crash_is_retried_and_batch_continues(
        self, db, ctx, session_factory, make_rule, make_contact, make_conversation, delivery, monkeypatch
    ):
        rule = make_rule({"type": "keyword", "keywords": ["oi"]}, action_text="Resposta")
        contact = make_contact()
        conversation = make_conversation(contact)
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.1")
        enqueue_dispatch(db, ctx, rule, contact, conversation, "wamid.2")
        db.commit()

        real_render = automation_service.render_action_text
        calls = {"n": 0}

        def flaky_render(rule, contact):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ValueError("bad tenant config")
            return real_render(rule, contact)

        monkeypatch.setattr(automation_service, "render_action_text", flaky_render)

        assert process_pending_jobs(session_factory, delivery) == 2

        db.expire_all()
        jobs = {job.status: job for job in db.query(AutomationJob).all()}
        assert set(jobs) == {JobStatus.PENDING, JobStatus.DONE}
        assert jobs[JobStatus.PENDING].last_error == "bad tenant config"
        assert jobs[JobStatus.PENDING].next_attempt_at is not None
        assert [sent["text"] for sent in delivery.sent] == ["Resposta"]
