import pytest

from rsastore.model.chatsession import chat_key, new_store
from rsastore.model.chatsession._sql import ChatSessionStore


@pytest.fixture
def chats(db, store):
    return ChatSessionStore(db=db, gated=store.gated, idle_seconds=1800)


async def test_unknown_chat_starts_at_menu(chats):
    session = await chats.get("whatsapp", "628123")
    assert session["state"] == "menu"
    assert session["data"] == {}


async def test_update_merges_data(chats):
    await chats.update("telegram", "42", state="awaiting_email",
                       data={"product_id": "p1"})
    session = await chats.update("telegram", "42", data={"email": "a@b.co"})
    assert session["state"] == "awaiting_email"
    assert session["data"] == {"product_id": "p1", "email": "a@b.co"}

    again = await chats.get("telegram", "42")
    assert again["data"] == {"product_id": "p1", "email": "a@b.co"}
    # channels do not share state
    assert (await chats.get("whatsapp", "42"))["state"] == "menu"


async def test_clear(chats):
    await chats.update("whatsapp", "628123", state="browsing")
    await chats.clear("whatsapp", "628123")
    assert (await chats.get("whatsapp", "628123"))["state"] == "menu"


async def test_idle_session_reads_fresh_and_is_swept(db, store, chats):
    await chats.update("whatsapp", "628123", state="browsing")
    short = ChatSessionStore(db=db, gated=store.gated, idle_seconds=-1)
    assert (await short.get("whatsapp", "628123"))["state"] == "menu"

    assert await chats.sweep() == 0
    assert await short.sweep() == 1
    assert (await chats.get("whatsapp", "628123"))["state"] == "menu"


async def test_factory_uses_configured_backend(db, store):
    chats = new_store(db=db, gated=store.gated)
    assert isinstance(chats, ChatSessionStore)
    with pytest.raises(RuntimeError):
        new_store(db=db)


def test_chat_key():
    assert chat_key("telegram", "42") == "telegram:42"
