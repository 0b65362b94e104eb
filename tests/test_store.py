import pytest

from english_tutor.engine.models import (
    Conversation,
    CreditOutcome,
    CreditTransaction,
    Message,
    MessageStatus,
    Role,
)


def user_message(mid, cid, text):
    return Message(id=mid, conversation_id=cid, role=Role.USER, content=text, status=MessageStatus.COMPLETE)


@pytest.mark.asyncio
async def test_sqlite_conversation_lifecycle(sqlite_store):
    # Create conversation
    conv = Conversation(id="conv-1", title="Test chat")
    await sqlite_store.save_conversation(conv)

    # List conversations
    convs = await sqlite_store.list_conversations()
    assert len(convs) == 1
    assert convs[0]["id"] == "conv-1"
    assert convs[0]["last_message"] is None

    # Add messages
    await sqlite_store.save_message(user_message("m-1", "conv-1", "Hello"))
    reply = Message(id="m-2", conversation_id="conv-1", role=Role.ASSISTANT, reply_to="m-1")
    await sqlite_store.save_message(reply)

    # Update the streamed reply in place
    reply.content = "Hi there"
    reply.translation = "Hola"
    reply.status = MessageStatus.COMPLETE
    await sqlite_store.save_message(reply)

    msgs = await sqlite_store.get_messages("conv-1")
    assert [m["id"] for m in msgs] == ["m-1", "m-2"]
    assert msgs[1]["content"] == "Hi there"
    assert msgs[1]["status"] == "complete"

    loaded = await sqlite_store.load_conversation("conv-1")
    assert loaded.title == "Test chat"
    assert loaded.messages[1].translation == "Hola"
    assert loaded.messages[1].reply_to == "m-1"

    convs = await sqlite_store.list_conversations()
    assert convs[0]["last_message"] == "Hi there"

    # Delete
    await sqlite_store.delete_message("m-1")
    assert len(await sqlite_store.get_messages("conv-1")) == 1
    await sqlite_store.delete_conversation("conv-1")
    assert await sqlite_store.get_conversation("conv-1") is None
    assert await sqlite_store.load_conversation("conv-1") is None


@pytest.mark.asyncio
async def test_conversation_title_update(sqlite_store):
    conv = Conversation(id="conv-1")
    await sqlite_store.save_conversation(conv)
    assert (await sqlite_store.get_conversation("conv-1"))["title"] == "New conversation"

    await sqlite_store.update_conversation_title("conv-1", "Updated title")
    updated = await sqlite_store.get_conversation("conv-1")
    assert updated["title"] == "Updated title"


@pytest.mark.asyncio
async def test_interrupted_messages_marked_failed(sqlite_store):
    await sqlite_store.save_conversation(Conversation(id="conv-1"))
    await sqlite_store.save_message(user_message("m-1", "conv-1", "Hello"))
    await sqlite_store.save_message(
        Message(
            id="m-2",
            conversation_id="conv-1",
            role=Role.ASSISTANT,
            content="Hal",
            status=MessageStatus.STREAMING,
        )
    )

    assert await sqlite_store.fail_interrupted_messages() == 1
    loaded = await sqlite_store.load_conversation("conv-1")
    assert loaded.messages[0].status is MessageStatus.COMPLETE
    assert loaded.messages[1].status is MessageStatus.FAILED
    assert loaded.messages[1].error == "transport_failure"
    assert loaded.messages[1].content == "Hal"


@pytest.mark.asyncio
async def test_transactions_recorded_once(sqlite_store):
    tx = CreditTransaction(turn_id="t-2", cost=1, balance=9, outcome=CreditOutcome.APPLIED)
    await sqlite_store.record_transaction(tx)
    await sqlite_store.record_transaction(tx)

    txs = await sqlite_store.list_transactions()
    assert len(txs) == 1
    assert txs[0]["outcome"] == "applied"


@pytest.mark.asyncio
async def test_last_message_preview_matches_in_memory(sqlite_store):
    conv = Conversation(id="conv-1")
    conv.messages.append(user_message("m-1", "conv-1", "I would like to practise ordering food at a busy restaurant"))
    await sqlite_store.save_conversation(conv)
    await sqlite_store.save_message(conv.messages[0])

    listed = await sqlite_store.list_conversations()
    assert listed[0]["last_message"] == conv.last_message_preview
    assert listed[0]["last_message"].endswith("...")
    assert len(listed[0]["last_message"]) == 53
