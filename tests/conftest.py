import json

import httpx
import pytest
from fastapi.testclient import TestClient

from anonchat.api import create_app
from anonchat.config import DEFAULT_CONFIG, merge_config
from anonchat.session import SessionState

# Mock upstream payloads
MOCK_REQUIREMENTS_RESPONSE = {
    "persona": "chatgpt-noauth",
    "token": "gAAAAABtest-session-token",
    "proofofwork": {"required": True, "seed": "0.42424242", "difficulty": "0fffff"},
}

MOCK_REQUIREMENTS_NO_POW = {
    "persona": "chatgpt-noauth",
    "token": "gAAAAABtest-token-no-pow",
    "proofofwork": {"required": False},
}

MOCK_CONVERSATION_ID = "6a1e0c34-3f0e-4d4e-9d0b-0d9f1c3a7e55"


def upstream_event(content, role="assistant", conversation_id=MOCK_CONVERSATION_ID):
    """An upstream conversation event carrying the whole answer so far."""
    event = {
        "message": {
            "id": "msg-1",
            "author": {"role": role},
            "content": {"content_type": "text", "parts": [content]},
            "status": "in_progress",
        },
        "conversation_id": conversation_id,
        "error": None,
    }
    if conversation_id is None:
        event.pop("conversation_id")
    return event


def sse_body(*events, done=True):
    """Encode events the way upstream frames them."""
    frames = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        frames.append(f"data: {payload}\n\n")
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


MOCK_CONVERSATION_BODY = sse_body(
    upstream_event("Hello!", role="user"),
    "2024-04-10 12:00:00.123456",
    upstream_event("Hi"),
    upstream_event("Hi there"),
    upstream_event("Hi there, how can I help?"),
)


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given pieces, like a slow network."""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


class FakeUpstream:
    """Stands in for the anonymous backend behind an httpx.MockTransport."""

    def __init__(self):
        # each entry is (status, json body) or an exception; the last one repeats
        self.requirements = [(200, MOCK_REQUIREMENTS_RESPONSE)]
        self.conversation = lambda: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=MOCK_CONVERSATION_BODY,
        )
        self.requests = []

    @property
    def conversation_requests(self):
        return [r for r in self.requests if r.url.path.endswith("/conversation")]

    @property
    def requirements_requests(self):
        return [r for r in self.requests if r.url.path.endswith("/chat-requirements")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/backend-anon/sentinel/chat-requirements":
            answer = self.requirements[0]
            if len(self.requirements) > 1:
                self.requirements.pop(0)
            if isinstance(answer, Exception):
                raise answer
            status_code, body = answer
            return httpx.Response(status_code, json=body)
        if request.url.path == "/backend-anon/conversation":
            response = self.conversation()
            if isinstance(response, Exception):
                raise response
            return response
        return httpx.Response(404, json={"detail": "Not Found"})

    def transport(self):
        return httpx.MockTransport(self.handler)


def make_config(**sections):
    overrides = {
        "upstream": {"base_url": "https://upstream.example.com"},
        "refresh": {"background": False, "after_request": False, "error_wait": 1, "max_backoff": 30},
        "logging": {"session_log": None},
    }
    for name, values in sections.items():
        overrides[name] = merge_config(overrides.get(name, {}), values)
    return merge_config(DEFAULT_CONFIG, overrides)


# Shared fixtures
@pytest.fixture
def test_config():
    return make_config()


@pytest.fixture
def session():
    return SessionState()


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def app(test_config, session, fake_upstream):
    return create_app(test_config, session=session, transport=fake_upstream.transport())


@pytest.fixture
def test_client(app):
    return TestClient(app)
