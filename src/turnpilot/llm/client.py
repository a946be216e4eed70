"""HTTP transport for the reasoning service and response classification."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from http.client import HTTPException
from typing import Literal
from urllib import request
from urllib.error import HTTPError, URLError

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

FatalCode = Literal["auth", "rate_limit", "overloaded", "quota", "repeated_failures"]
RecoverableKind = Literal["transport", "timeout", "api_error", "http_error", "parse_error"]

_FATAL_ERROR_TYPES: dict[str, FatalCode] = {
    "authentication_error": "auth",
    "permission_error": "auth",
    "invalid_api_key": "auth",
    "rate_limit_error": "rate_limit",
    "overloaded_error": "overloaded",
    "billing_error": "quota",
    "insufficient_quota": "quota",
    "quota_exceeded": "quota",
}
_FATAL_STATUSES: dict[int, FatalCode] = {
    401: "auth",
    403: "auth",
    429: "rate_limit",
    529: "overloaded",
}


@dataclass(slots=True)
class RequestSuccess:
    text: str


@dataclass(slots=True)
class RecoverableFailure:
    detail: str
    kind: RecoverableKind = "api_error"


@dataclass(slots=True)
class FatalFailure:
    detail: str
    code: FatalCode


RequestOutcome = RequestSuccess | RecoverableFailure | FatalFailure


@dataclass(slots=True)
class HttpExchange:
    """Status code and raw body of one completed POST."""

    status: int
    body: bytes


class TransportError(Exception):
    """The POST never produced an HTTP status."""

    def __init__(self, detail: str, *, body: bytes | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.body = body


class ReasoningClient:
    """Small HTTP client for the messages endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        max_tokens: int = 1024,
        temperature: float = 1.0,
        api_url: str = DEFAULT_API_URL,
        extended_thinking: bool = False,
        thinking_budget: int = 1024,
        system_prompt: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.api_url = api_url
        self.extended_thinking = extended_thinking
        self.thinking_budget = thinking_budget
        self.system_prompt = system_prompt
        self.timeout = timeout

    def build_payload(
        self,
        history: list[dict[str, str]],
        text: str,
        images: list[bytes] | None = None,
    ) -> dict[str, object]:
        """Build the request body: prior history, then this turn's images and text."""
        content: list[dict[str, object]] = []
        for image in images or []:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/png",
                        "data": base64.b64encode(image).decode("ascii"),
                    },
                }
            )
        content.append({"type": "text", "text": text})

        messages: list[dict[str, object]] = [dict(message) for message in history]
        messages.append({"role": "user", "content": content})

        payload: dict[str, object] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt
        if self.extended_thinking:
            payload["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
            payload["max_tokens"] = max(self.max_tokens, self.thinking_budget + 1)
        else:
            payload["temperature"] = self.temperature
        return payload

    def post(self, payload: dict[str, object]) -> HttpExchange:
        """Send one POST. Blocking; meant to run off the engine thread."""
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(payload.get("messages", []) or []),
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                return HttpExchange(status=resp.status, body=resp.read())
        except HTTPError as exc:
            raw = self._read_error_body(exc)
            LOGGER.warning(
                "llm_request_http_error",
                extra={"api_url": self.api_url, "http_status": exc.code, "reason": exc.reason},
            )
            return HttpExchange(status=exc.code, body=raw)
        except URLError as exc:
            LOGGER.warning(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "reason": str(exc.reason)},
            )
            raise TransportError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TransportError(f"Model request timed out after {self.timeout:.1f}s") from exc
        except OSError as exc:
            raise TransportError(f"Model request failed: {exc}") from exc
        except HTTPException as exc:
            LOGGER.warning(
                "llm_request_protocol_error",
                extra={"api_url": self.api_url, "error": type(exc).__name__},
            )
            raise TransportError(f"Model response was cut off: {type(exc).__name__}") from exc

    @staticmethod
    def _read_error_body(exc: HTTPError) -> bytes:
        if exc.fp is None:
            return b""
        try:
            return exc.read()
        except OSError:
            return b""


def classify_exchange(exchange: HttpExchange) -> RequestOutcome:
    """Map an HTTP status and body onto success, recoverable, or fatal."""
    payload = _decode_object(exchange.body)
    ok_status = 200 <= exchange.status < 300

    if payload is None:
        excerpt = _excerpt(exchange.body)
        if not ok_status:
            code = _FATAL_STATUSES.get(exchange.status)
            detail = f"HTTP {exchange.status}: {excerpt or 'no response body'}"
            if code is not None:
                return FatalFailure(detail=detail, code=code)
            return RecoverableFailure(detail=detail, kind="http_error")
        return RecoverableFailure(
            detail=f"Model response parsing error: {excerpt or 'empty body'}",
            kind="parse_error",
        )

    error = payload.get("error")
    if isinstance(error, dict) or payload.get("type") == "error":
        return _classify_api_error(error if isinstance(error, dict) else {}, exchange.status)

    if not ok_status:
        code = _FATAL_STATUSES.get(exchange.status)
        detail = f"HTTP {exchange.status}: {_excerpt(exchange.body)}"
        if code is not None:
            return FatalFailure(detail=detail, code=code)
        return RecoverableFailure(detail=detail, kind="http_error")

    text = extract_text(payload)
    if text is None:
        return RecoverableFailure(
            detail="Model response parsing error: no text content returned",
            kind="parse_error",
        )
    return RequestSuccess(text=text)


def classify_transport_error(exc: TransportError) -> RequestOutcome:
    """Network failures retry, unless the body says the key is bad."""
    if exc.body:
        payload = _decode_object(exc.body)
        error = payload.get("error") if payload else None
        if isinstance(error, dict) and _FATAL_ERROR_TYPES.get(str(error.get("type"))) == "auth":
            return FatalFailure(detail=_error_detail(error), code="auth")
    return RecoverableFailure(detail=exc.detail, kind="transport")


def extract_text(payload: dict[str, object]) -> str | None:
    """Join text-kind content entries; thinking and tool entries are dropped."""
    content = payload.get("content")
    if not isinstance(content, list):
        return None
    fragments: list[str] = []
    for entry in content:
        if not isinstance(entry, dict) or entry.get("type") != "text":
            continue
        text = entry.get("text")
        if isinstance(text, str) and text.strip():
            fragments.append(text)
    if not fragments:
        return None
    return "\n".join(fragments).strip()


def _classify_api_error(error: dict[object, object], status: int) -> RequestOutcome:
    error_type = str(error.get("type") or "")
    detail = _error_detail(error)
    code = _FATAL_ERROR_TYPES.get(error_type)
    message = str(error.get("message") or "").lower()
    if code is None and "credit balance" in message:
        code = "quota"
    if code is None and error_type in {"", "error"}:
        code = _FATAL_STATUSES.get(status)
    if code is not None:
        return FatalFailure(detail=detail, code=code)
    return RecoverableFailure(detail=detail, kind="api_error")


def _error_detail(error: dict[object, object]) -> str:
    error_type = error.get("type") or "unknown_error"
    message = error.get("message") or "no message"
    return f"API error ({error_type}): {message}"


def _decode_object(raw: bytes) -> dict[str, object] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    return {str(key): value for key, value in parsed.items()}


def _excerpt(raw: bytes, *, max_chars: int = 300) -> str:
    text = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
    if len(text) > max_chars:
        return f"{text[:max_chars]}..."
    return text
