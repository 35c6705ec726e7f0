"""Completion service clients.

Two interchangeable variants turn an ordered conversation history into an
assistant reply:

- :class:`DirectCompletionClient` posts the (capped) history to a
  chat-completions endpoint in a single call.
- :class:`ThreadCompletionClient` creates a remote thread, posts the user
  turn, starts a run for a fixed assistant and polls the run with
  exponential backoff until it reaches a terminal status.

Both check the credential first, de-duplicate identical requests through a
:class:`ResponseCache`, keep a minimum interval between outbound calls and
bound every network call with their own timer.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx
import structlog

from ..domain.errors import (
    CredentialMissing,
    InvalidMessage,
    PollTimeout,
    RemoteServiceError,
    RequestTimeout,
    RunFailed,
)
from ..domain.models import IMAGE_PLACEHOLDER, Attachment, Message
from ..repositories.encrypted import EncryptedStore
from .response_cache import ResponseCache, make_cache_key

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]

IMAGE_PROMPT = "Please analyze this image"


def to_turns(history: Iterable[Any]) -> List[Dict[str, Any]]:
    """(role, content) turns from messages or plain dicts; transient messages are skipped."""
    turns: List[Dict[str, Any]] = []
    for item in history:
        if isinstance(item, Message):
            if item.is_loading or item.is_error:
                continue
            role, content = item.role.value, item.content
        elif isinstance(item, Mapping):
            if item.get("is_loading") or item.get("is_error"):
                continue
            role = item.get("role", item.get("type"))
            content = item.get("content")
        else:
            continue
        turns.append({"role": "user" if role == "user" else "assistant", "content": content})
    return turns


def to_image_payloads(images: Iterable[Any]) -> List[Dict[str, Any]]:
    payloads: List[Dict[str, Any]] = []
    for image in images:
        if isinstance(image, Attachment):
            payloads.append(image.model_dump(by_alias=True))
        elif isinstance(image, Mapping) and image.get("data"):
            payloads.append(dict(image))
    return payloads


def multipart_content(text: Any, images: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Text part followed by one ``image_url`` part per attached image."""
    if not isinstance(text, str) or not text.strip() or text == IMAGE_PLACEHOLDER:
        text = IMAGE_PROMPT
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    parts.extend({"type": "image_url", "image_url": {"url": image["data"]}} for image in images)
    return parts


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message")
        if isinstance(error, str):
            return error
    return None


class CompletionClient(ABC):
    """Shared request pipeline: credential, cache, throttle, timeout, error mapping."""

    def __init__(
        self,
        store: EncryptedStore,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[ResponseCache] = None,
        min_request_interval: float = 1.0,
        request_timeout: float = 30.0,
        test_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.base_url = base_url.rstrip("/")
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self.cache = cache or ResponseCache()
        self.min_request_interval = min_request_interval
        self.request_timeout = request_timeout
        self.test_timeout = test_timeout
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: Optional[float] = None
        self.requests_sent = 0

    async def complete(
        self,
        history: Sequence[Any],
        images: Sequence[Any] = (),
        conversation_id: Optional[int] = None,
    ) -> str:
        """Return the assistant reply for ``history``.

        Raises ``CredentialMissing`` before any network activity when no API
        key is stored, ``RequestTimeout``/``PollTimeout`` on expiry and
        ``RemoteServiceError`` for everything the service reports.
        """
        api_key = await self.store.get_credential()
        if not api_key:
            raise CredentialMissing()

        turns = to_turns(history)
        if not turns:
            raise InvalidMessage("Invalid message history provided.")
        image_payloads = to_image_payloads(images)

        cache_key = make_cache_key(turns, image_payloads, scope=conversation_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info("completion_cache_hit", conversation_id=conversation_id)
            return cached

        await self._throttle()
        start = time.monotonic()
        reply = await self._request_reply(api_key, turns, image_payloads)
        logger.info(
            "completion_received",
            conversation_id=conversation_id,
            turns=len(turns),
            images=len(image_payloads),
            reply_length=len(reply),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        self.cache.put(cache_key, reply, scope=conversation_id)
        return reply

    def purge_cache(self, conversation_id: Optional[int] = None) -> int:
        return self.cache.purge(conversation_id)

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    @abstractmethod
    async def test_connection(self, api_key: str) -> bool:
        """Cheap call validating a candidate API key before it is saved."""
        pass

    @abstractmethod
    async def _request_reply(
        self, api_key: str, turns: List[Dict[str, Any]], images: List[Dict[str, Any]]
    ) -> str:
        pass

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def _throttle(self) -> None:
        if self._last_request_at is not None:
            wait = self.min_request_interval - (self._clock() - self._last_request_at)
            if wait > 0:
                logger.info("completion_request_throttled", wait_seconds=round(wait, 3))
                await self._sleep(wait)
        self._last_request_at = self._clock()

    async def _call(
        self,
        method: str,
        path: str,
        api_key: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """One bounded HTTP exchange, returning the decoded JSON body."""
        url = f"{self.base_url}{path}"
        limit = self.request_timeout if timeout is None else timeout
        self.requests_sent += 1
        try:
            response = await asyncio.wait_for(
                self.http.request(method, url, headers=self._headers(api_key), json=json),
                timeout=limit,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("completion_request_timeout", path=path, timeout=limit)
            raise RequestTimeout()
        except httpx.HTTPError as e:
            logger.error("completion_request_failed", path=path, error=str(e))
            raise RemoteServiceError(
                f"Unable to reach the service: {e}", kind=RemoteServiceError.NETWORK
            ) from e

        if response.status_code >= 400:
            logger.warning("completion_request_rejected", path=path, status_code=response.status_code)
            raise RemoteServiceError.from_status(response.status_code, _error_detail(response))
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteServiceError(
                "Malformed response from the service", status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise RemoteServiceError("Malformed response from the service", status_code=response.status_code)
        return data


class DirectCompletionClient(CompletionClient):
    """Single-call variant against an OpenAI-compatible ``/chat/completions``."""

    def __init__(
        self,
        store: EncryptedStore,
        base_url: str = "https://api.poe.com/v1",
        model: str = "debunkr.org",
        history_limit: int = 20,
        **kwargs: Any,
    ) -> None:
        super().__init__(store, base_url, **kwargs)
        self.model = model
        self.history_limit = max(1, history_limit)

    def build_messages(
        self, turns: List[Dict[str, Any]], images: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Cap the history and fold images into the last user turn."""
        messages = [dict(turn) for turn in turns[-self.history_limit:]]
        if images:
            last_user = next((m for m in reversed(messages) if m["role"] == "user"), None)
            if last_user is not None:
                last_user["content"] = multipart_content(last_user["content"], images)
        return messages

    async def _request_reply(
        self, api_key: str, turns: List[Dict[str, Any]], images: List[Dict[str, Any]]
    ) -> str:
        body = {"model": self.model, "messages": self.build_messages(turns, images)}
        data = await self._call("POST", "/chat/completions", api_key, json=body)

        choices = data.get("choices")
        if choices is not None and not isinstance(choices, list):
            raise RemoteServiceError("Malformed response from the service")
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content:
            raise RemoteServiceError("No response from assistant.")
        return content

    async def test_connection(self, api_key: str) -> bool:
        if not api_key or not isinstance(api_key, str) or len(api_key) < 10:
            logger.warning("connection_test_rejected_key_format")
            return False
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 1,
        }
        try:
            await self._call("POST", "/chat/completions", api_key, json=body, timeout=self.test_timeout)
        except (RemoteServiceError, RequestTimeout) as e:
            logger.warning("connection_test_failed", error=str(e))
            return False
        return True


PENDING_STATUSES = ("queued", "in_progress")


class ThreadCompletionClient(CompletionClient):
    """Thread/run variant for assistant-style APIs that complete asynchronously."""

    def __init__(
        self,
        store: EncryptedStore,
        assistant_id: str,
        base_url: str = "https://api.openai.com/v1",
        poll_initial: float = 0.5,
        poll_factor: float = 1.5,
        poll_max: float = 8.0,
        max_poll_attempts: int = 60,
        **kwargs: Any,
    ) -> None:
        super().__init__(store, base_url, **kwargs)
        self.assistant_id = assistant_id
        self.poll_initial = poll_initial
        self.poll_factor = poll_factor
        self.poll_max = poll_max
        self.max_poll_attempts = max_poll_attempts

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = super()._headers(api_key)
        headers["OpenAI-Beta"] = "assistants=v2"
        return headers

    async def _request_reply(
        self, api_key: str, turns: List[Dict[str, Any]], images: List[Dict[str, Any]]
    ) -> str:
        last_user = next((t for t in reversed(turns) if t["role"] == "user"), None)
        if last_user is None:
            raise InvalidMessage("No user message to send")
        content: Any = last_user["content"]
        if images:
            content = multipart_content(content, images)

        thread = await self._call("POST", "/threads", api_key, json={})
        thread_id = thread.get("id")
        if not thread_id:
            raise RemoteServiceError("Failed to create thread")

        await self._call(
            "POST", f"/threads/{thread_id}/messages", api_key, json={"role": "user", "content": content}
        )
        run = await self._call(
            "POST", f"/threads/{thread_id}/runs", api_key, json={"assistant_id": self.assistant_id}
        )
        run_id = run.get("id")
        if not run_id:
            raise RemoteServiceError("Failed to create run")
        return await self.poll_for_completion(api_key, thread_id, run_id)

    async def get_run_status(self, api_key: str, thread_id: str, run_id: str) -> str:
        run = await self._call("GET", f"/threads/{thread_id}/runs/{run_id}", api_key)
        return str(run.get("status"))

    async def poll_for_completion(self, api_key: str, thread_id: str, run_id: str) -> str:
        """Poll with exponential backoff, then return the first assistant message text."""
        status = await self.get_run_status(api_key, thread_id, run_id)
        interval = self.poll_initial
        attempts = 0
        while status in PENDING_STATUSES:
            if attempts >= self.max_poll_attempts:
                logger.warning("run_poll_exhausted", run_id=run_id, attempts=attempts)
                raise PollTimeout(attempts)
            await self._sleep(interval)
            status = await self.get_run_status(api_key, thread_id, run_id)
            attempts += 1
            interval = min(interval * self.poll_factor, self.poll_max)

        if status != "completed":
            logger.warning("run_failed", run_id=run_id, status=status)
            raise RunFailed(status)

        listing = await self._call("GET", f"/threads/{thread_id}/messages", api_key)
        for message in listing.get("data") or []:
            if not isinstance(message, dict) or message.get("role") != "assistant":
                continue
            parts = message.get("content") or []
            if isinstance(parts, list) and parts and isinstance(parts[0], dict):
                text = parts[0].get("text")
                if isinstance(text, dict):
                    text = text.get("value")
                if isinstance(text, str) and text:
                    return text
        raise RemoteServiceError("No response from assistant")

    async def test_connection(self, api_key: str) -> bool:
        if not api_key or not isinstance(api_key, str):
            return False
        try:
            await self._call("GET", "/models", api_key, timeout=self.test_timeout)
        except (RemoteServiceError, RequestTimeout) as e:
            logger.warning("connection_test_failed", error=str(e))
            return False
        return True
