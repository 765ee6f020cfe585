"""Translation between OpenAI chat completions and the upstream conversation stream."""

import json
import logging
import random
import string
import time
import uuid
from typing import Dict, Any, AsyncIterator, List, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, Response, StreamingResponse

from .backends import UpstreamClient
from .errors import AnonChatError, ComposeError, UpstreamError
from .models import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    Delta,
    Message,
    ResponseMessage,
)
from .refresher import TokenRefresher
from .session import SessionState
from .streaming import is_heartbeat, iter_messages

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_letters + string.digits


def generate_completion_id(prefix: str = "cmpl-", length: int = 28) -> str:
    return prefix + "".join(random.choices(ID_ALPHABET, k=length))


def sse_frame(payload: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def build_conversation_body(
    request: ChatCompletionRequest,
    session: SessionState,
    upstream_config: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Map an OpenAI chat request onto the upstream conversation body.

    The client's conversation id is only forwarded once upstream has confirmed
    a conversation for the current device identity.
    """
    body = {
        "action": "next",
        "messages": [
            {
                "id": str(uuid.uuid4()),
                "author": {"role": message.role},
                "content": {"content_type": "text", "parts": [message.content]},
                "metadata": {},
            }
            for message in request.messages
        ],
        "parent_message_id": str(uuid.uuid4()),
        "model": upstream_config.get("model", "text-davinci-002-render-sha"),
        "timezone_offset_min": upstream_config.get("timezone_offset_min", -480),
        "suggestions": [],
        "history_and_training_disabled": False,
        "conversation_mode": {"kind": "primary_assistant"},
        "force_nulligen": False,
        "force_paragen": False,
        "force_paragen_model_slug": "",
        "force_rate_limit": False,
        "websocket_request_id": str(uuid.uuid4()),
    }

    if request.conversation_id and session.keep_conversation:
        body["conversation_id"] = request.conversation_id

    return body


def extract_content(event: Dict[str, Any]) -> str:
    """First text part of the event's message, or an empty string."""
    message = event.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list) or not parts:
        return ""
    first = parts[0]
    return first if isinstance(first, str) else ""


def is_echo(content: str, messages: List[Message]) -> bool:
    """Upstream sometimes streams the prompt back; those events carry a client message verbatim."""
    return any(message.content == content for message in messages)


class CompletionAccumulator:
    """Per-request state of one chat completion."""

    def __init__(self, model: str):
        self.id = generate_completion_id("chatcmpl-")
        self.created = int(time.time())
        self.model = model
        self.content = ""
        self.conversation_id: Optional[str] = None

    def observe(self, content: str) -> str:
        """
        Record ``content`` and return the part not seen before.

        Upstream resends the whole answer so far with every event; only the
        tail beyond the longest content already seen is new.
        """
        if len(content) <= len(self.content):
            return ""
        delta = content[len(self.content) :]
        self.content = content
        return delta

    def chunk(self, delta: str, finish_reason: Optional[str] = None) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model,
            conversation_id=self.conversation_id,
            choices=[ChunkChoice(delta=Delta(content=delta), finish_reason=finish_reason)],
        )

    def completion(self) -> ChatCompletionResponse:
        return ChatCompletionResponse(
            id=self.id,
            created=self.created,
            model=self.model,
            conversation_id=self.conversation_id,
            choices=[Choice(message=ResponseMessage(content=self.content), finish_reason="stop")],
        )


class CompletionResponder:
    """Runs one client request end to end: build, authorize, dispatch, stream, finalize."""

    def __init__(
        self,
        config: Dict[str, Any],
        session: SessionState,
        upstream: UpstreamClient,
        refresher: TokenRefresher,
    ):
        self.config = config
        self.session = session
        self.upstream = upstream
        self.refresher = refresher

    @property
    def default_model(self) -> str:
        return self.config.get("response", {}).get("model", "gpt-3.5-turbo")

    def background(self) -> Optional[BackgroundTask]:
        if self.config.get("refresh", {}).get("after_request", False):
            return BackgroundTask(self.refresher.refresh_quietly)
        return None

    def error_status(self, error: AnonChatError) -> int:
        response_config = self.config.get("response", {})
        if isinstance(error, UpstreamError):
            return response_config.get("upstream_error_status", 502)
        return response_config.get("compose_error_status", 500)

    def error_response(self, error: AnonChatError) -> JSONResponse:
        return JSONResponse(error.envelope(), status_code=self.error_status(error), background=self.background())

    async def authorize(self) -> None:
        if not self.config.get("refresh", {}).get("before_request", False):
            return
        if not await self.refresher.refresh():
            logger.warning("Inline token refresh failed, using the current token")

    async def dispatch(self, body: Dict[str, Any]) -> httpx.Response:
        logger.info(f"Conversation id: {body.get('conversation_id')}")
        try:
            return await self.upstream.open_conversation(body)
        except httpx.HTTPStatusError as e:
            raise UpstreamError(str(e), e.response.status_code) from e
        except httpx.HTTPError as e:
            raise UpstreamError(str(e) or type(e).__name__) from e

    async def iter_contents(
        self,
        response: httpx.Response,
        request: ChatCompletionRequest,
        accumulator: CompletionAccumulator,
    ) -> AsyncIterator[str]:
        """
        Yield the non-empty answer contents carried by the upstream events, in order.
        """
        async for payload in iter_messages(response.aiter_bytes()):
            if is_heartbeat(payload):
                continue
            try:
                event = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping undecodable event {payload[:200]!r}: {e}")
                continue
            if not isinstance(event, dict):
                continue

            content = extract_content(event)

            conversation_id = event.get("conversation_id")
            self.session.mark_conversation(conversation_id)
            if conversation_id:
                accumulator.conversation_id = conversation_id

            if is_echo(content, request.messages):
                content = ""
            if not content:
                continue
            yield content

    async def stream_chunks(
        self,
        response: httpx.Response,
        request: ChatCompletionRequest,
        accumulator: CompletionAccumulator,
    ) -> AsyncIterator[bytes]:
        try:
            async for content in self.iter_contents(response, request, accumulator):
                delta = accumulator.observe(content)
                if delta:
                    yield sse_frame(accumulator.chunk(delta).model_dump())
            yield sse_frame(accumulator.chunk("", finish_reason="stop").model_dump())
            yield b"data: [DONE]\n\n"
        except httpx.HTTPError as e:
            logger.error(f"Upstream stream failed: {str(e)}")
            yield sse_frame(UpstreamError(str(e) or type(e).__name__).envelope())
        except Exception as e:
            logger.error(f"Error composing streamed response: {str(e)}")
            yield sse_frame(ComposeError(str(e)).envelope())
        finally:
            await response.aclose()

    async def collect(
        self,
        response: httpx.Response,
        request: ChatCompletionRequest,
        accumulator: CompletionAccumulator,
    ) -> ChatCompletionResponse:
        try:
            async for content in self.iter_contents(response, request, accumulator):
                accumulator.observe(content)
            return accumulator.completion()
        except httpx.HTTPError as e:
            raise UpstreamError(str(e) or type(e).__name__) from e
        except AnonChatError:
            raise
        except Exception as e:
            raise ComposeError(str(e)) from e
        finally:
            await response.aclose()

    async def respond(self, request: ChatCompletionRequest) -> Response:
        """
        Produce the client response for one chat completion request.

        Upstream failures before any byte is sent become an error envelope with
        ``response.upstream_error_status`` (502 by default), composition failures
        one with ``response.compose_error_status`` (500). Once streaming has
        started, errors are reported as a final event.
        """
        try:
            body = build_conversation_body(request, self.session, self.config["upstream"])
        except Exception as e:
            logger.error(f"Error building upstream body: {str(e)}")
            return self.error_response(ComposeError(str(e)))

        await self.authorize()

        try:
            upstream_response = await self.dispatch(body)
        except UpstreamError as e:
            logger.error(f"Error: {str(e)}")
            return self.error_response(e)

        accumulator = CompletionAccumulator(request.model or self.default_model)

        if request.stream:
            return StreamingResponse(
                self.stream_chunks(upstream_response, request, accumulator),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
                background=self.background(),
            )

        try:
            completion = await self.collect(upstream_response, request, accumulator)
        except AnonChatError as e:
            logger.error(f"Error: {str(e)}")
            return self.error_response(e)

        return JSONResponse(completion.model_dump(), background=self.background())
