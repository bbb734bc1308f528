from engage.models import Message
from engage.services.message_service import (
    SenderKind,
    get_conversation_history,
    has_newer_contact_message,
    persist_inbound,
    save_outbound_message,
)


class TestPersistInbound:
    def test_first_delivery_is_stored(self, db, ctx, make_contact, make_conversation, make_event):
        conversation = make_conversation(make_contact())
        event = make_event(text="oi", message_id="wamid.A")

        message, created = persist_inbound(db, ctx, conversation, event)
        db.commit()

        assert created is True
        assert message.external_id == "wamid.A"
        assert message.sender_kind == "contact"
        assert message.status == "delivered"
        assert message.content == "oi"

    def test_redelivery_returns_stored_message(self, db, ctx, make_contact, make_conversation, make_event):
        conversation = make_conversation(make_contact())
        event = make_event(message_id="wamid.A")

        first, _ = persist_inbound(db, ctx, conversation, event)
        db.commit()
        second, created = persist_inbound(db, ctx, conversation, event)

        assert created is False
        assert second.id == first.id
        assert db.query(Message).count() == 1


class TestSaveOutbound:
    def test_bot_message_is_pending(self, db, ctx, make_contact, make_conversation):
        conversation = make_conversation(make_contact())

        message = save_outbound_message(db, ctx, conversation.id, "Hello!")

        assert message.sender_kind == SenderKind.BOT.value
        assert message.status == "pending"
        assert message.external_id is None


class TestConversationHistory:
    def test_bounded_and_oldest_first(self, db, make_contact, make_conversation, make_message):
        conversation = make_conversation(make_contact())
        make_message(conversation, "m1")
        make_message(conversation, "m2", sender_kind="bot")
        make_message(conversation, "m3", sender_kind="agent")
        make_message(conversation, "m4")

        history = get_conversation_history(db, conversation.id, limit=3)

        assert history == [
            {"role": "assistant", "content": "m2"},
            {"role": "assistant", "content": "m3"},
            {"role": "user", "content": "m4"},
        ]


class TestHasNewerContactMessage:
    def test_detects_newer_contact_message(self, db, make_contact, make_conversation, make_message):
        conversation = make_conversation(make_contact())
        first = make_message(conversation, "first")
        make_message(conversation, "second")

        assert has_newer_contact_message(db, conversation.id, first.id) is True

    def test_latest_message_is_not_newer(self, db, make_contact, make_conversation, make_message):
        conversation = make_conversation(make_contact())
        make_message(conversation, "first")
        latest = make_message(conversation, "second")

        assert has_newer_contact_message(db, conversation.id, latest.id) is False
