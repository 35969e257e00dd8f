"""OpenAI Assistants (threads and runs) backend over httpx."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import httpx

from ..backend import AskProgress, BackendError, BackendReply, ErrorKind, Role
from ..logging import get_logger
from ..model import MessageId, ThreadRef
from ..settings import ConfigError, OpenAISettings

logger = get_logger(__name__)

PENDING_RUN_STATUSES = frozenset({"queued", "in_progress", "cancelling"})


def _error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or "")
    return ""


def _is_active_run_error(message: str) -> bool:
    # "Can't add messages to thread_x while a run run_y is active."
    lowered = message.lower()
    return "while a run" in lowered and "is active" in lowered


def classify_response(response: httpx.Response) -> BackendError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    message = _error_message(payload) or f"HTTP {response.status_code}"
    if response.status_code == 429:
        return BackendError(ErrorKind.RATE_LIMITED, message)
    if response.status_code in (400, 409) and _is_active_run_error(message):
        return BackendError(ErrorKind.CONCURRENT_RUN_ACTIVE, message)
    if response.status_code in (408, 504):
        return BackendError(ErrorKind.TIMEOUT, message)
    return BackendError(ErrorKind.UNCLASSIFIED, message)


def _message_text(message: dict[str, Any]) -> str:
    parts: list[str] = []
    for content in message.get("content") or []:
        if content.get("type") == "text":
            value = (content.get("text") or {}).get("value")
            if value:
                parts.append(value)
    return "\n".join(parts)


class OpenAIAssistantsBackend:
    def __init__(
        self,
        *,
        api_key: str,
        assistant_id: str,
        base_url: str = "https://api.openai.com/v1",
        poll_interval_s: float = 1.0,
        cancel_timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._assistant_id = assistant_id
        self._poll_interval_s = poll_interval_s
        self._cancel_timeout_s = cancel_timeout_s
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(30.0, connect=10.0),
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "assistants=v2",
        }

    @classmethod
    def from_settings(cls, settings: OpenAISettings) -> "OpenAIAssistantsBackend":
        if settings.api_key is None or not settings.assistant_id:
            raise ConfigError("openai.api_key and openai.assistant_id are required")
        return cls(
            api_key=settings.api_key.get_secret_value(),
            assistant_id=settings.assistant_id,
            base_url=settings.base_url,
            poll_interval_s=settings.poll_interval_s,
        )

    async def __aenter__(self) -> "OpenAIAssistantsBackend":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=self._headers
            )
        except httpx.TimeoutException as exc:
            raise BackendError(ErrorKind.TIMEOUT, f"{method} {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendError(ErrorKind.UNCLASSIFIED, f"{method} {path}: {exc}") from exc

        if response.is_error:
            error = classify_response(response)
            logger.warning(
                "openai.request_failed",
                method=method,
                path=path,
                status=response.status_code,
                error_kind=error.kind.value,
                error=str(error),
            )
            raise error
        return response.json()

    async def ask(
        self,
        thread_ref: ThreadRef | None,
        text: str,
        *,
        progress: AskProgress | None = None,
    ) -> BackendReply:
        progress = progress or AskProgress()
        thread_ref = progress.thread_ref or thread_ref
        if thread_ref is None:
            thread = await self._request("POST", "/threads", json={})
            thread_ref = ThreadRef(thread["id"])
            logger.info("openai.thread_created", thread_ref=thread_ref)
        progress.thread_ref = thread_ref

        if not progress.message_posted:
            await self._request(
                "POST",
                f"/threads/{thread_ref}/messages",
                json={"role": "user", "content": text},
            )
            progress.message_posted = True

        run = await self._request(
            "POST",
            f"/threads/{thread_ref}/runs",
            json={"assistant_id": self._assistant_id},
        )
        run_id = run["id"]
        try:
            while run.get("status") in PENDING_RUN_STATUSES:
                await self._sleep(self._poll_interval_s)
                run = await self._request("GET", f"/threads/{thread_ref}/runs/{run_id}")
        except anyio.get_cancelled_exc_class():
            with anyio.move_on_after(self._cancel_timeout_s, shield=True):
                await self._cancel_run(thread_ref, run_id)
            raise

        status = run.get("status")
        if status != "completed":
            last_error = run.get("last_error") or {}
            kind = (
                ErrorKind.RATE_LIMITED
                if last_error.get("code") == "rate_limit_exceeded"
                else ErrorKind.UNCLASSIFIED
            )
            raise BackendError(
                kind, f"run {run_id} ended with status {status}: {last_error.get('message', '')}"
            )

        listing = await self._request(
            "GET",
            f"/threads/{thread_ref}/messages",
            params={"order": "desc", "limit": 20, "run_id": run_id},
        )
        for message in listing.get("data") or []:
            if message.get("role") == "assistant":
                answer = _message_text(message)
                if answer:
                    return BackendReply(text=answer, thread_ref=thread_ref)
        raise BackendError(ErrorKind.UNCLASSIFIED, f"run {run_id} produced no text reply")

    async def _cancel_run(self, thread_ref: ThreadRef, run_id: str) -> None:
        """Stop a run whose caller gave up waiting."""
        try:
            await self._request("POST", f"/threads/{thread_ref}/runs/{run_id}/cancel")
        except BackendError as exc:
            logger.warning(
                "openai.run_cancel_failed",
                thread_ref=thread_ref,
                run_id=run_id,
                error=str(exc),
            )
            return
        logger.info("openai.run_cancelled", thread_ref=thread_ref, run_id=run_id)

    async def append_message(
        self, thread_ref: ThreadRef, role: Role, text: str
    ) -> MessageId:
        message = await self._request(
            "POST",
            f"/threads/{thread_ref}/messages",
            json={"role": role, "content": text},
        )
        return MessageId(message["id"])
