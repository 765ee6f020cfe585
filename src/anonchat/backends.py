"""Upstream handling for the anonchat proxy."""

import json
import logging
from typing import Dict, Any, Optional

import httpx

from .session import SessionState

logger = logging.getLogger(__name__)

REQUIREMENTS_PATH = "/backend-anon/sentinel/chat-requirements"
CONVERSATION_PATH = "/backend-anon/conversation"


def browser_headers(upstream_config: Dict[str, Any]) -> Dict[str, str]:
    """Headers a desktop Chrome sends to the chat frontend's own API."""
    base_url = upstream_config["base_url"]
    return {
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "gzip, deflate",
        "Cache-Control": "no-cache",
        "Content-Type": "application/json",
        "Oai-Language": upstream_config.get("language", "en-US"),
        "Origin": base_url,
        "Referer": base_url,
        "Pragma": "no-cache",
        "Sec-Ch-Ua": '"Google Chrome";v="123", "Not:A-Brand";v="8", "Chromium";v="123"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"Windows"',
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "same-origin",
        "User-Agent": upstream_config["user_agent"],
    }


class UpstreamClient:
    """
    Thin wrapper around an ``httpx.AsyncClient`` for the two anonymous endpoints.

    Credentials are read from the shared :class:`SessionState` when each call
    is sent, never cached here.
    """

    def __init__(
        self,
        upstream_config: Dict[str, Any],
        session: SessionState,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = upstream_config
        self.session = session
        self.base_url = upstream_config["base_url"].rstrip("/")

        client_kwargs: Dict[str, Any] = {
            "headers": browser_headers(upstream_config),
            "timeout": upstream_config.get("timeout", 120),
            "verify": upstream_config.get("verify_ssl", True),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif upstream_config.get("proxy"):
            client_kwargs["proxy"] = upstream_config["proxy"]
            client_kwargs["trust_env"] = False
        self.client = httpx.AsyncClient(**client_kwargs)

    @property
    def user_agent(self) -> str:
        return self.config["user_agent"]

    def session_headers(self) -> Dict[str, str]:
        return {
            "Oai-Device-Id": self.session.current(),
            "Oai-Language": self.config.get("language", "en-US"),
        }

    async def fetch_requirements(self) -> Dict[str, Any]:
        """
        Ask upstream for a session token and its proof-of-work challenge.

        Returns:
            The decoded JSON body, e.g. ``{"token": ..., "proofofwork": {...}}``

        Raises:
            httpx.HTTPError: on network failure or a non-2xx status
            ValueError: when the body is not a JSON object
        """
        url = f"{self.base_url}{REQUIREMENTS_PATH}"
        response = await self.client.post(url, json={}, headers=self.session_headers())
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected requirements response: {response.text[:200]}")
        return data

    async def open_conversation(self, body: Dict[str, Any]) -> httpx.Response:
        """
        POST a conversation body and return the still-open streamed response.

        The caller owns the response and must ``aclose()`` it. Non-2xx answers,
        redirects included, are read, closed and raised as ``httpx.HTTPStatusError``.
        """
        headers = self.session_headers()
        headers["Accept"] = "text/event-stream"
        if self.session.token:
            headers["Openai-Sentinel-Chat-Requirements-Token"] = self.session.token
        if self.session.proof_token:
            headers["Openai-Sentinel-Proof-Token"] = self.session.proof_token

        request = self.client.build_request(
            "POST",
            f"{self.base_url}{CONVERSATION_PATH}",
            content=json.dumps(body).encode(),
            headers=headers,
        )
        response = await self.client.send(request, stream=True)
        if not response.is_success:
            try:
                await response.aread()
                logger.error(f"Upstream conversation call failed ({response.status_code}): {response.text[:500]}")
                response.raise_for_status()
            finally:
                await response.aclose()
        return response

    async def aclose(self) -> None:
        await self.client.aclose()
