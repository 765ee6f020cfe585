"""Session token refresh and the background retry loop."""

import asyncio
import logging
from contextlib import suppress
from typing import Dict, Any, Optional

import httpx

from .backends import UpstreamClient
from .config import session_logger
from .proof_of_work import solve_async
from .session import SessionState

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Exchanges the current device identity for a fresh session token."""

    def __init__(
        self,
        upstream: UpstreamClient,
        session: SessionState,
        pow_config: Optional[Dict[str, Any]] = None,
    ):
        self.upstream = upstream
        self.session = session
        pow_config = pow_config or {}
        self.pow_enabled = pow_config.get("enabled", True)
        self.pow_max_attempts = pow_config.get("max_attempts", 100000)

    async def refresh(self) -> bool:
        """
        Fetch a new session token (and solve its challenge when one is issued).

        Returns:
            True when new credentials were stored. On any failure the existing
            token is left in place and False is returned.
        """
        device_id = self.session.current()
        try:
            data = await self.upstream.fetch_requirements()
        except (httpx.HTTPError, ValueError) as e:
            session_logger.error(f"Error refreshing token for device {device_id}: {str(e)}")
            return False

        token = data.get("token")
        if not token or not isinstance(token, str):
            session_logger.error(f"Requirements response carried no token: {data}")
            return False

        proof_token = None
        challenge = data.get("proofofwork") or {}
        if self.pow_enabled and isinstance(challenge, dict) and challenge.get("seed"):
            if challenge.get("required", True):
                proof_token = await solve_async(
                    str(challenge["seed"]),
                    str(challenge.get("difficulty", "")),
                    self.upstream.user_agent,
                    self.pow_max_attempts,
                )

        self.session.store_credentials(token, proof_token)
        return True

    async def refresh_quietly(self) -> None:
        """Best-effort refresh ahead of the next request; failures are only logged."""
        logger.info("Prepare a new token for next request")
        try:
            if not await self.refresh():
                logger.warning("Failed to renew the token, continue using the old one")
        except Exception as e:
            logger.error(f"Unexpected error renewing the token: {str(e)}")


class RefreshLoop:
    """
    Repeatedly drives :meth:`TokenRefresher.refresh` with backoff on failure.

    While a (possibly stale) token is held the identity is kept and retries
    slow down. While no token has been obtained the identity is renewed every
    ``renew_after_failures`` consecutive failures.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        session: SessionState,
        refresh_config: Optional[Dict[str, Any]] = None,
    ):
        refresh_config = refresh_config or {}
        self.refresher = refresher
        self.session = session
        self.interval = float(refresh_config.get("interval", 60))
        self.error_wait = float(refresh_config.get("error_wait", 15))
        self.stale_token_factor = float(refresh_config.get("stale_token_factor", 10))
        self.max_backoff = float(refresh_config.get("max_backoff", 600))
        self.renew_after_failures = max(1, int(refresh_config.get("renew_after_failures", 1)))

        self.consecutive_failures = 0
        self.failures_since_renewal = 0
        self._task: Optional[asyncio.Task] = None

    async def step(self) -> float:
        """Run one refresh attempt and return how long to wait before the next one."""
        session_logger.info(f"Device id: {self.session.current()}, requesting new token")

        if await self.refresher.refresh():
            self.consecutive_failures = 0
            self.failures_since_renewal = 0
            logger.info(f"Waiting {self.interval:g} seconds before the next token refresh")
            return self.interval

        self.consecutive_failures += 1

        if self.session.has_token:
            delay = min(self.error_wait * self.stale_token_factor * self.consecutive_failures, self.max_backoff)
            session_logger.info(f"Continue using the old token, retrying in {delay:g} seconds")
            return delay

        self.failures_since_renewal += 1
        delay = min(self.error_wait * self.consecutive_failures, self.max_backoff)
        if self.failures_since_renewal >= self.renew_after_failures:
            self.failures_since_renewal = 0
            self.session.renew()
            session_logger.info(f"Retrying in {delay:g} seconds with a new device id")
        else:
            session_logger.info(f"Retrying in {delay:g} seconds")
        return delay

    async def run(self) -> None:
        while True:
            try:
                delay = await self.step()
            except Exception as e:
                logger.error(f"Unexpected error in token refresh loop: {str(e)}")
                delay = self.error_wait
            await asyncio.sleep(delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
