"""Gemini backend over the generateContent REST endpoint.

Gemini keeps no server-side threads, so the backend holds each chat session
in memory, keyed by the thread reference it hands back. Every call sends the
whole session history. A turn enters the history only once the model has
answered it, so a retried ask never repeats the user text.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from typing import Any

import httpx

from ..backend import AskProgress, BackendError, BackendReply, ErrorKind, Role
from ..logging import get_logger
from ..model import MessageId, ThreadRef
from ..settings import ConfigError, GeminiSettings

logger = get_logger(__name__)

Content = dict[str, Any]

_ROLES: dict[Role, str] = {"user": "user", "assistant": "model"}


def classify_gemini_response(response: httpx.Response) -> BackendError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    error = payload.get("error") if isinstance(payload, dict) else None
    error = error if isinstance(error, dict) else {}
    message = str(error.get("message") or f"HTTP {response.status_code}")
    status = str(error.get("status") or "")
    # 503 is "model overloaded".
    if response.status_code in (429, 503) or status == "RESOURCE_EXHAUSTED":
        return BackendError(ErrorKind.RATE_LIMITED, message)
    if response.status_code in (408, 504) or status == "DEADLINE_EXCEEDED":
        return BackendError(ErrorKind.TIMEOUT, message)
    return BackendError(ErrorKind.UNCLASSIFIED, message)


def _with_turn(history: list[Content], role: str, text: str) -> list[Content]:
    """Return ``history`` plus one turn; same-role turns share one content."""
    part = {"text": text}
    if history and history[-1]["role"] == role:
        last = history[-1]
        return [*history[:-1], {"role": role, "parts": [*last["parts"], part]}]
    return [*history, {"role": role, "parts": [part]}]


def _candidate_text(payload: dict[str, Any]) -> str:
    for candidate in payload.get("candidates") or []:
        parts = (candidate.get("content") or {}).get("parts") or []
        texts = [part["text"] for part in parts if part.get("text")]
        if texts:
            return "\n".join(texts)
    return ""


class GeminiBackend:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        system_instruction: str = "",
        max_sessions: int = 10_000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._system_instruction = system_instruction
        self._max_sessions = max_sessions
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(60.0, connect=10.0),
        )
        self._headers = {"x-goog-api-key": api_key}
        self._sessions: OrderedDict[ThreadRef, list[Content]] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: GeminiSettings) -> "GeminiBackend":
        if settings.api_key is None or not settings.model:
            raise ConfigError("gemini.api_key and gemini.model are required")
        return cls(
            api_key=settings.api_key.get_secret_value(),
            model=settings.model,
            base_url=settings.base_url,
            system_instruction=settings.system_instruction,
            max_sessions=settings.max_sessions,
        )

    async def __aenter__(self) -> "GeminiBackend":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def history(self, thread_ref: ThreadRef) -> list[Content]:
        return list(self._sessions.get(thread_ref, ()))

    def _session(self, thread_ref: ThreadRef) -> list[Content]:
        history = self._sessions.get(thread_ref)
        if history is None:
            history = []
            self._sessions[thread_ref] = history
            while len(self._sessions) > self._max_sessions:
                oldest, _ = self._sessions.popitem(last=False)
                logger.info("gemini.session_evicted", thread_ref=oldest)
        else:
            self._sessions.move_to_end(thread_ref)
        return history

    async def _generate(self, contents: list[Content]) -> dict[str, Any]:
        path = f"/models/{self._model}:generateContent"
        body: dict[str, Any] = {"contents": contents}
        if self._system_instruction:
            body["systemInstruction"] = {"parts": [{"text": self._system_instruction}]}
        try:
            response = await self._client.post(path, json=body, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise BackendError(ErrorKind.TIMEOUT, f"POST {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendError(ErrorKind.UNCLASSIFIED, f"POST {path}: {exc}") from exc

        if response.is_error:
            error = classify_gemini_response(response)
            logger.warning(
                "gemini.request_failed",
                model=self._model,
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
            thread_ref = ThreadRef(f"gemini-{uuid.uuid4().hex}")
            logger.info("gemini.session_created", thread_ref=thread_ref)
        progress.thread_ref = thread_ref

        history = self._session(thread_ref)
        contents = _with_turn(history, "user", text)
        payload = await self._generate(contents)
        answer = _candidate_text(payload)
        if not answer:
            reason = (payload.get("promptFeedback") or {}).get("blockReason")
            raise BackendError(
                ErrorKind.UNCLASSIFIED,
                f"no text candidate (block reason: {reason or 'none'})",
            )

        history[:] = _with_turn(contents, "model", answer)
        return BackendReply(text=answer, thread_ref=thread_ref)

    async def append_message(
        self, thread_ref: ThreadRef, role: Role, text: str
    ) -> MessageId:
        history = self._session(thread_ref)
        history[:] = _with_turn(history, _ROLES[role], text)
        return MessageId(f"{thread_ref}:{uuid.uuid4().hex[:12]}")
