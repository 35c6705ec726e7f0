"""Test suite for the encrypted store and its backends."""

import asyncio

import pytest

from parley_chat.domain.errors import DecryptionFailure, StorageError
from parley_chat.domain.models import Conversation
from parley_chat.repositories.encrypted import (
    KEY_ACTIVE_ID,
    KEY_CONVERSATIONS,
    KEY_CREDENTIAL,
    KEY_ENCRYPTION,
    KEY_INDEX,
    KEY_LEGACY_CREDENTIAL,
    KEY_NEXT_ID,
    EncryptedStore,
)
from parley_chat.repositories.file import JsonFileBackend
from parley_chat.repositories.memory import InMemoryBackend


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def conversation_with(conversation_id: int, *contents: str) -> Conversation:
    conversation = Conversation(id=conversation_id)
    for content in contents:
        conversation.add_message(content)
    return conversation


@pytest.mark.asyncio
async def test_encrypt_decrypt_round_trip():
    """Test JSON values survive encryption unchanged."""
    store = EncryptedStore(InMemoryBackend())
    value = {"a": [1, 2, {"b": None}], "text": "héllo", "flag": True}

    blob = await store.encrypt(value)

    assert isinstance(blob, bytes)
    assert await store.decrypt(blob) == value


@pytest.mark.asyncio
async def test_fresh_nonce_per_encryption():
    """Test encrypting the same value twice gives different blobs."""
    store = EncryptedStore(InMemoryBackend())
    assert await store.encrypt("same") != await store.encrypt("same")


@pytest.mark.asyncio
@pytest.mark.parametrize("position", [0, 11, 12, -1])
async def test_tampered_blob_fails_authentication(position):
    """Test flipping a nonce or ciphertext byte raises instead of returning data."""
    store = EncryptedStore(InMemoryBackend())
    blob = bytearray(await store.encrypt({"secret": "value"}))
    blob[position] ^= 0x01

    with pytest.raises(DecryptionFailure):
        await store.decrypt(bytes(blob))


@pytest.mark.asyncio
async def test_key_is_created_once_and_reused():
    """Test the installation key is generated lazily and persisted."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    blob = await store.encrypt("value")

    key = backend.snapshot()[KEY_ENCRYPTION]
    assert len(key) == 32

    reopened = EncryptedStore(backend)
    assert await reopened.decrypt(blob) == "value"
    assert backend.snapshot()[KEY_ENCRYPTION] == key


@pytest.mark.asyncio
async def test_decrypt_accepts_byte_lists_and_legacy_strings():
    """Test numeric byte arrays and plain JSON strings are both readable."""
    store = EncryptedStore(InMemoryBackend())
    blob = await store.encrypt({"x": 1})

    assert await store.decrypt(list(blob)) == {"x": 1}
    assert await store.decrypt('{"legacy": true}') == {"legacy": True}
    with pytest.raises(DecryptionFailure):
        await store.decrypt(12345)


@pytest.mark.asyncio
async def test_save_and_load_round_trip():
    """Test conversations, next id and active id survive a save/load cycle."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    conversations = {1: conversation_with(1, "hello"), 2: conversation_with(2)}

    assert await store.save(conversations, 3, 1) is True

    state = await EncryptedStore(backend).load()
    assert set(state.chats) == {"1", "2"}
    assert state.chats["1"]["messages"][0]["content"] == "hello"
    assert state.next_id == 3
    assert state.active_id == 1
    assert isinstance(backend.snapshot()[KEY_CONVERSATIONS], bytes)


@pytest.mark.asyncio
async def test_index_is_unencrypted_and_skips_invalid_entries():
    """Test the index lists only valid conversations, without encryption."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    chats = {
        1: conversation_with(1, "hello"),
        "abc": {"messages": []},
        "-4": {"messages": []},
        7: {"title": "No messages list"},
        8: conversation_with(8),
    }

    await store.save(chats, 9, None)

    index = backend.snapshot()[KEY_INDEX]
    assert set(index) == {"1", "8"}
    assert index["1"]["title"] == "hello"
    assert index["1"]["hasMessages"] is True
    assert index["8"]["hasMessages"] is False


@pytest.mark.asyncio
async def test_corrupt_blob_loads_as_empty_state():
    """Test an undecryptable blob is treated as no prior data."""
    backend = InMemoryBackend({KEY_CONVERSATIONS: b"\x00" * 40, KEY_NEXT_ID: 5})
    state = await EncryptedStore(backend).load()

    assert state.chats == {}
    assert state.next_id == 5


@pytest.mark.asyncio
async def test_load_normalizes_pair_lists_and_bad_scalars():
    """Test a pair-list blob becomes a mapping and invalid scalars fall back."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    blob = await store.encrypt([["1", {"messages": []}], ["2", {"messages": []}]])
    await backend.set({KEY_CONVERSATIONS: blob, KEY_NEXT_ID: -3, KEY_ACTIVE_ID: "oops"})

    state = await store.load()

    assert list(state.chats) == ["1", "2"]
    assert state.next_id == 1
    assert state.active_id is None


@pytest.mark.asyncio
async def test_debounced_save_coalesces_rapid_calls():
    """Test five rapid debounced saves produce one write holding the last payload."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend, save_delay=0.05)

    for count in range(1, 6):
        payload = {i: conversation_with(i, f"message {i}") for i in range(1, count + 1)}
        store.debounced_save(payload, count + 1, count)
        await asyncio.sleep(0.01)

    assert store.writes == 0
    await store.wait_pending()

    assert store.writes == 1
    state = await store.load()
    assert len(state.chats) == 5
    assert state.active_id == 5


@pytest.mark.asyncio
async def test_force_save_cancels_pending_debounce():
    """Test a forced save writes immediately and supersedes the pending one."""
    store = EncryptedStore(InMemoryBackend(), save_delay=0.05)
    store.debounced_save({1: conversation_with(1, "old")}, 2, 1)
    assert store.has_pending_save

    assert await store.force_save({1: conversation_with(1, "new")}, 2, 1) is True
    assert not store.has_pending_save

    await asyncio.sleep(0.08)
    assert store.writes == 1
    state = await store.load()
    assert state.chats["1"]["messages"][0]["content"] == "new"


@pytest.mark.asyncio
async def test_failed_write_is_logged_not_raised():
    """Test a quota failure during save returns False instead of raising."""
    backend = InMemoryBackend(fail_on_set=lambda entries: KEY_CONVERSATIONS in entries)
    store = EncryptedStore(backend)

    assert await store.save({1: conversation_with(1, "hi")}, 2, 1) is False
    assert store.writes == 0


@pytest.mark.asyncio
async def test_reset_keeps_credential_and_key():
    """Test the destructive reset only clears conversation keys."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    await store.save({1: conversation_with(1, "hi")}, 2, 1)
    await store.save_credential("sk-test-1234567890")

    await store.reset_conversations()

    remaining = backend.snapshot()
    assert set(remaining) == {KEY_ENCRYPTION, KEY_CREDENTIAL}
    assert (await store.load()).chats == {}


@pytest.mark.asyncio
async def test_prune_index_and_recent_conversations():
    """Test stale index rows are pruned and recent entries are ordered by activity."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    older = Conversation.from_dict(
        1,
        {
            "title": "first",
            "messages": [{"role": "user", "content": "first"}],
            "last_activity_at": "2024-01-01T00:00:00+00:00",
        },
    )
    draft = conversation_with(2)
    newer = Conversation.from_dict(
        3,
        {
            "title": "second",
            "messages": [{"role": "user", "content": "second"}],
            "last_activity_at": "2024-02-01T00:00:00+00:00",
        },
    )
    await store.save({1: older, 2: draft, 3: newer}, 4, 3)

    assert await store.prune_index([1, 2]) == 1
    assert set(backend.snapshot()[KEY_INDEX]) == {"1", "2"}

    await store.save({1: older, 3: newer}, 4, 3)
    recent = await store.recent_conversations()
    assert [entry.id for entry in recent] == [3, 1]
    assert recent[0].title == "second"
    assert len(await store.recent_conversations(limit=1)) == 1


@pytest.mark.asyncio
async def test_credential_cache_and_invalidation():
    """Test credential reads are cached for the TTL and refreshed after it."""
    backend = InMemoryBackend()
    clock = FakeClock()
    store = EncryptedStore(backend, credential_ttl=300.0, clock=clock)
    await store.save_credential("sk-first-credential")
    assert await store.get_credential() == "sk-first-credential"

    writer = EncryptedStore(backend)
    await writer.save_credential("sk-second-credential")

    assert await store.get_credential() == "sk-first-credential"
    clock.now += 301
    assert await store.get_credential() == "sk-second-credential"

    await writer.save_credential("sk-third-credential")
    store.invalidate_cache()
    assert await store.get_credential() == "sk-third-credential"


@pytest.mark.asyncio
async def test_legacy_credential_key_fallback():
    """Test a credential stored under the legacy key is still found."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    await backend.set({KEY_LEGACY_CREDENTIAL: await store.encrypt("sk-legacy-credential")})

    assert await store.get_credential() == "sk-legacy-credential"


@pytest.mark.asyncio
async def test_missing_and_corrupt_credential():
    """Test no credential yields None and a corrupt one raises DecryptionFailure."""
    backend = InMemoryBackend()
    store = EncryptedStore(backend)
    assert await store.get_credential() is None

    await backend.set({KEY_CREDENTIAL: b"\x01" * 30})
    with pytest.raises(DecryptionFailure):
        await store.get_credential()


@pytest.mark.asyncio
async def test_credential_write_failure_raises():
    """Test a failed credential write surfaces as StorageError."""
    backend = InMemoryBackend(fail_on_set=lambda entries: KEY_CREDENTIAL in entries)
    store = EncryptedStore(backend)

    with pytest.raises(StorageError):
        await store.save_credential("sk-test-1234567890")


@pytest.mark.asyncio
async def test_json_file_backend_persists_bytes(tmp_path):
    """Test the file backend round-trips byte values through one JSON document."""
    path = tmp_path / "state" / "parley.json"
    store = EncryptedStore(JsonFileBackend(path))
    await store.save({1: conversation_with(1, "hello")}, 2, 1)
    await store.save_credential("sk-file-credential")

    reopened = EncryptedStore(JsonFileBackend(path))
    state = await reopened.load()
    assert state.chats["1"]["title"] == "hello"
    assert await reopened.get_credential() == "sk-file-credential"

    await reopened.reset_conversations()
    assert (await EncryptedStore(JsonFileBackend(path)).load()).chats == {}


@pytest.mark.asyncio
async def test_json_file_backend_wraps_corrupt_file(tmp_path):
    """Test an unreadable file surfaces as StorageError from the backend."""
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError):
        await JsonFileBackend(path).get([KEY_CONVERSATIONS])
