"""Test suite for runtime wiring and configuration."""

import httpx
import pytest
from pydantic import ValidationError

from parley_chat.config import Settings, load_settings
from parley_chat.repositories.encrypted import EncryptedStore
from parley_chat.repositories.memory import InMemoryBackend
from parley_chat.services.completion import DirectCompletionClient, ThreadCompletionClient
from parley_chat.services.runtime import ChatRuntime, build_client

API_KEY = "sk-test-0123456789"


def make_runtime(handler, backend=None, **settings):
    options = {"min_request_interval": 0.0, "save_delay": 0.01}
    options.update(settings)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatRuntime(settings=Settings(**options), backend=backend or InMemoryBackend(), http_client=http)


def reply(text):
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


@pytest.mark.asyncio
async def test_state_survives_restart():
    """Test conversations written on shutdown are restored on the next start."""
    backend = InMemoryBackend()
    runtime = make_runtime(lambda request: reply("ok"), backend=backend)
    await runtime.start()
    conversation = await runtime.directory.create_new()
    conversation.add_message("remember me")
    await runtime.shutdown()

    restarted = make_runtime(lambda request: reply("ok"), backend=backend)
    await restarted.start()

    restored = restarted.directory.get(conversation.id)
    assert restored is not None
    assert restored.messages[0].content == "remember me"
    assert restarted.directory.active_id == conversation.id
    assert restarted.directory.next_id == conversation.id + 1
    await restarted.shutdown()


@pytest.mark.asyncio
async def test_start_is_idempotent():
    """Test a second start does not reload over live state."""
    runtime = make_runtime(lambda request: reply("ok"))
    await runtime.start()
    conversation = await runtime.directory.create_new()
    await runtime.start()
    assert runtime.directory.get(conversation.id) is conversation
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_delete_purges_cached_replies():
    """Test deleting a conversation drops its cached completion."""
    calls = []

    def handler(request):
        calls.append(request)
        return reply(f"reply {len(calls)}")

    runtime = make_runtime(handler)
    await runtime.start()
    await runtime.store.save_credential(API_KEY)
    doomed = await runtime.directory.create_new()
    await runtime.dispatcher.send(doomed.id, "Same question")
    assert len(runtime.client.cache) == 1

    assert await runtime.directory.delete(doomed.id) is True
    assert len(runtime.client.cache) == 0

    fresh = runtime.directory.active
    await runtime.dispatcher.send(fresh.id, "Same question")
    assert len(calls) == 2
    assert fresh.last_message().content == "reply 2"
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_save_credential_runs_connection_test_first():
    """Test a rejected key is never stored and an accepted one is."""

    def handler(request):
        if request.headers["Authorization"] == f"Bearer {API_KEY}":
            return reply("p")
        return httpx.Response(401)

    runtime = make_runtime(handler)
    await runtime.start()

    assert await runtime.save_credential("sk-wrong-0123456789") is False
    assert await runtime.store.get_credential() is None

    assert await runtime.save_credential(API_KEY) is True
    assert await runtime.store.get_credential() == API_KEY
    await runtime.shutdown()


def test_build_client_variants():
    """Test the configured variant selects the client class and its knobs."""
    store = EncryptedStore(InMemoryBackend())

    direct = build_client(Settings(history_limit=7, cache_size=3), store)
    assert isinstance(direct, DirectCompletionClient)
    assert direct.history_limit == 7
    assert direct.cache.max_entries == 3

    thread = build_client(
        Settings(client_variant="thread", assistant_id="asst_1", api_base_url="https://proxy.test/v1/"),
        store,
    )
    assert isinstance(thread, ThreadCompletionClient)
    assert thread.assistant_id == "asst_1"
    assert thread.base_url == "https://proxy.test/v1"


def test_load_settings_defaults():
    """Test defaults apply when nothing is set."""
    settings = load_settings({})
    assert settings == Settings()
    assert settings.min_request_interval == 1.0
    assert settings.poll_max_attempts == 60


def test_load_settings_parses_values():
    """Test values are coerced, the variant is normalized and blanks keep defaults."""
    settings = load_settings(
        {
            "PARLEY_DATA_PATH": "/tmp/parley.json",
            "PARLEY_CLIENT_VARIANT": " Thread ",
            "PARLEY_ASSISTANT_ID": "asst_9",
            "PARLEY_REQUEST_TIMEOUT": "",
            "PARLEY_CACHE_SIZE": "50",
            "PARLEY_SAVE_DELAY": "0.25",
            "UNRELATED": "ignored",
        }
    )
    assert settings.data_path == "/tmp/parley.json"
    assert settings.client_variant == "thread"
    assert settings.assistant_id == "asst_9"
    assert settings.request_timeout == 30.0
    assert settings.cache_size == 50
    assert settings.save_delay == 0.25


@pytest.mark.parametrize(
    "name, value",
    [
        ("PARLEY_HISTORY_LIMIT", "0"),
        ("PARLEY_REQUEST_TIMEOUT", "not-a-number"),
        ("PARLEY_CLIENT_VARIANT", "carrier-pigeon"),
        ("PARLEY_POLL_MAX_ATTEMPTS", "-1"),
    ],
)
def test_load_settings_rejects_invalid_values(name, value):
    """Test out-of-range and malformed values raise a validation error."""
    with pytest.raises(ValidationError):
        load_settings({name: value})


def test_settings_read_process_environment(monkeypatch):
    """Test the prefixed variables are read when no mapping is passed."""
    monkeypatch.setenv("PARLEY_HISTORY_LIMIT", "7")
    monkeypatch.setenv("PARLEY_CLIENT_VARIANT", "THREAD")
    settings = load_settings()
    assert settings.history_limit == 7
    assert settings.client_variant == "thread"
