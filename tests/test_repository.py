"""Test suite for the in-memory repository and blob store."""

from uuid import uuid4

import pytest

from plasmamind_chat.domain.errors import ConversationNotFound, StoreError, UploadFailed
from plasmamind_chat.domain.models import Message, ProviderConfig, Role


@pytest.mark.asyncio
async def test_conversation_lifecycle(repository, user_id):
    conversation = await repository.create_conversation(user_id, "First")
    await repository.rename_conversation(conversation.id, "Renamed")

    [listed] = await repository.list_conversations(user_id)
    assert listed.title == "Renamed"
    assert await repository.list_conversations(uuid4()) == []

    await repository.delete_conversation(conversation.id)
    assert await repository.get_conversation(conversation.id) is None
    with pytest.raises(ConversationNotFound):
        await repository.list_messages(conversation.id)


@pytest.mark.asyncio
async def test_append_orders_messages_and_bumps_conversation(repository, user_id):
    older = await repository.create_conversation(user_id, "Older")
    newer = await repository.create_conversation(user_id, "Newer")

    await repository.append_message(Message(conversation_id=older.id, content="one"))
    await repository.append_message(
        Message(conversation_id=older.id, role=Role.ASSISTANT, content="two")
    )

    assert [m.content for m in await repository.list_messages(older.id)] == ["one", "two"]
    assert [c.id for c in await repository.list_conversations(user_id)] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_append_to_missing_conversation(repository):
    with pytest.raises(ConversationNotFound):
        await repository.append_message(Message(conversation_id=uuid4(), content="lost"))


@pytest.mark.asyncio
async def test_update_and_delete_message(repository, user_id):
    conversation = await repository.create_conversation(user_id, "Edit")
    message = await repository.append_message(
        Message(conversation_id=conversation.id, role=Role.ASSISTANT, content="Generating image...")
    )

    updated = await repository.update_message(message.id, "Done", image_url="https://img.test/1.png")
    assert updated.id == message.id
    assert (await repository.list_messages(conversation.id))[0].image_url == "https://img.test/1.png"

    await repository.delete_message(message.id)
    assert await repository.list_messages(conversation.id) == []
    with pytest.raises(StoreError):
        await repository.delete_message(message.id)
    with pytest.raises(StoreError):
        await repository.update_message(message.id, "gone")


@pytest.mark.asyncio
async def test_provider_config_upsert(repository, user_id):
    created = await repository.upsert_provider_config(
        ProviderConfig(name="Flash", model_name="gemini-2.5-flash", api_key="  "), user_id
    )
    assert created.user_id == user_id
    assert created.api_key is None

    edited = await repository.upsert_provider_config(
        ProviderConfig(name="Flash 2", model_name="gemini-2.5-pro"), user_id, created.id
    )
    assert edited.id == created.id
    assert edited.created_at == created.created_at

    [stored] = await repository.list_provider_configs(user_id)
    assert stored.name == "Flash 2"

    await repository.delete_provider_config(created.id)
    await repository.delete_provider_config(created.id)
    assert await repository.list_provider_configs(user_id) == []


@pytest.mark.asyncio
async def test_blob_store_rejects_duplicates(blob_store):
    url = await blob_store.upload("user/a.png", b"data")
    assert url == "https://blobs.test/chat-attachments/user/a.png"
    with pytest.raises(UploadFailed):
        await blob_store.upload("user/a.png", b"other")
    with pytest.raises(UploadFailed):
        await blob_store.upload("", b"data")


@pytest.mark.asyncio
async def test_get_message(repository, user_id):
    conversation = await repository.create_conversation(user_id, "Lookup")
    message = await repository.append_message(Message(conversation_id=conversation.id, content="find me"))

    assert await repository.get_message(message.id) == message
    assert await repository.get_message(uuid4()) is None
