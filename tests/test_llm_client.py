import base64
import io
import json
from http.client import IncompleteRead
from urllib.error import HTTPError, URLError

import pytest

from turnpilot.llm.client import (
    FatalFailure,
    HttpExchange,
    ReasoningClient,
    RecoverableFailure,
    RequestSuccess,
    TransportError,
    classify_exchange,
    classify_transport_error,
    extract_text,
)


def _exchange(payload: object, status: int = 200) -> HttpExchange:
    return HttpExchange(status=status, body=json.dumps(payload).encode("utf-8"))


def test_payload_puts_images_before_text_and_keeps_history() -> None:
    client = ReasoningClient(api_key="k", model="test-model", max_tokens=512, temperature=0.7)
    history = [{"role": "user", "content": "old"}, {"role": "assistant", "content": "BUTTONS: A"}]

    payload = client.build_payload(history, "what next?", images=[b"\x89PNG"])

    assert payload["model"] == "test-model"
    assert payload["max_tokens"] == 512
    assert payload["temperature"] == 0.7
    messages = payload["messages"]
    assert messages[:2] == history
    content = messages[2]["content"]
    assert content[0]["type"] == "image"
    assert content[0]["source"]["media_type"] == "image/png"
    assert base64.b64decode(content[0]["source"]["data"]) == b"\x89PNG"
    assert content[1] == {"type": "text", "text": "what next?"}


def test_payload_with_extended_thinking_drops_temperature() -> None:
    client = ReasoningClient(
        api_key="k",
        model="test-model",
        max_tokens=512,
        extended_thinking=True,
        thinking_budget=2048,
        system_prompt="play well",
    )

    payload = client.build_payload([], "go")

    assert payload["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert payload["max_tokens"] == 2049
    assert "temperature" not in payload
    assert payload["system"] == "play well"


def test_extract_text_ignores_thinking_entries() -> None:
    payload = {
        "content": [
            {"type": "thinking", "thinking": "secret"},
            {"type": "text", "text": "Head north."},
            {"type": "text", "text": "BUTTONS: UP"},
        ]
    }

    assert extract_text(payload) == "Head north.\nBUTTONS: UP"


def test_classify_success() -> None:
    outcome = classify_exchange(_exchange({"content": [{"type": "text", "text": "BUTTONS: A"}]}))

    assert outcome == RequestSuccess(text="BUTTONS: A")


@pytest.mark.parametrize(
    ("error_type", "code"),
    [
        ("authentication_error", "auth"),
        ("rate_limit_error", "rate_limit"),
        ("overloaded_error", "overloaded"),
        ("billing_error", "quota"),
    ],
)
def test_fatal_api_error_types(error_type: str, code: str) -> None:
    outcome = classify_exchange(
        _exchange({"type": "error", "error": {"type": error_type, "message": "nope"}}, status=400)
    )

    assert isinstance(outcome, FatalFailure)
    assert outcome.code == code
    assert error_type in outcome.detail


def test_other_api_error_is_recoverable() -> None:
    outcome = classify_exchange(
        _exchange({"type": "error", "error": {"type": "api_error", "message": "boom"}}, status=500)
    )

    assert isinstance(outcome, RecoverableFailure)
    assert outcome.kind == "api_error"


def test_credit_balance_message_is_quota() -> None:
    outcome = classify_exchange(
        _exchange(
            {
                "type": "error",
                "error": {
                    "type": "invalid_request_error",
                    "message": "Your credit balance is too low",
                },
            },
            status=400,
        )
    )

    assert isinstance(outcome, FatalFailure)
    assert outcome.code == "quota"


def test_malformed_body_is_recoverable_parse_error() -> None:
    outcome = classify_exchange(HttpExchange(status=200, body=b"not-json"))

    assert isinstance(outcome, RecoverableFailure)
    assert outcome.kind == "parse_error"


def test_missing_text_is_parse_error() -> None:
    outcome = classify_exchange(_exchange({"content": [{"type": "thinking", "thinking": "x"}]}))

    assert isinstance(outcome, RecoverableFailure)
    assert outcome.kind == "parse_error"


def test_non_json_status_maps_to_codes() -> None:
    assert classify_exchange(HttpExchange(status=401, body=b"")).code == "auth"
    assert classify_exchange(HttpExchange(status=529, body=b"busy")).code == "overloaded"
    outcome = classify_exchange(HttpExchange(status=502, body=b"<html>bad gateway</html>"))
    assert isinstance(outcome, RecoverableFailure)
    assert outcome.kind == "http_error"
    assert "HTTP 502" in outcome.detail


def test_transport_error_recoverable_unless_body_says_auth() -> None:
    plain = classify_transport_error(TransportError("connection reset"))
    auth_body = json.dumps(
        {"error": {"type": "authentication_error", "message": "invalid x-api-key"}}
    ).encode("utf-8")
    auth = classify_transport_error(TransportError("closed", body=auth_body))

    assert isinstance(plain, RecoverableFailure)
    assert plain.kind == "transport"
    assert isinstance(auth, FatalFailure)
    assert auth.code == "auth"


def test_post_sends_headers_and_returns_exchange(monkeypatch) -> None:
    client = ReasoningClient(api_key="secret", model="test-model")
    captured = {}

    class FakeResponse:
        status = 200

        def __enter__(self):
            return self

        def __exit__(self, *_args):
            return False

        def read(self):
            return b'{"content":[]}'

    def fake_urlopen(req, timeout):
        captured["headers"] = {key.lower(): value for key, value in req.header_items()}
        captured["timeout"] = timeout
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return FakeResponse()

    monkeypatch.setattr("turnpilot.llm.client.request.urlopen", fake_urlopen)

    exchange = client.post({"model": "test-model", "messages": []})

    assert exchange == HttpExchange(status=200, body=b'{"content":[]}')
    assert captured["headers"]["x-api-key"] == "secret"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    assert captured["body"]["model"] == "test-model"


def test_post_returns_http_error_body(monkeypatch) -> None:
    client = ReasoningClient(api_key="secret", model="test-model")
    body = b'{"type":"error","error":{"type":"rate_limit_error","message":"slow down"}}'

    def fake_urlopen(*_args, **_kwargs):
        raise HTTPError(
            url="https://example.com",
            code=429,
            msg="Too Many Requests",
            hdrs=None,
            fp=io.BytesIO(body),
        )

    monkeypatch.setattr("turnpilot.llm.client.request.urlopen", fake_urlopen)

    exchange = client.post({"messages": []})

    assert exchange.status == 429
    assert classify_exchange(exchange).code == "rate_limit"


def test_post_raises_transport_error_on_network_failure(monkeypatch) -> None:
    client = ReasoningClient(api_key="secret", model="test-model")

    def fake_urlopen(*_args, **_kwargs):
        raise URLError("name resolution failed")

    monkeypatch.setattr("turnpilot.llm.client.request.urlopen", fake_urlopen)

    with pytest.raises(TransportError, match="name resolution failed"):
        client.post({"messages": []})


def test_post_raises_transport_error_on_truncated_response(monkeypatch) -> None:
    client = ReasoningClient(api_key="secret", model="test-model")

    def fake_urlopen(*_args, **_kwargs):
        raise IncompleteRead(b"{\"content\": [", 40)

    monkeypatch.setattr("turnpilot.llm.client.request.urlopen", fake_urlopen)

    with pytest.raises(TransportError, match="IncompleteRead"):
        client.post({"messages": []})
