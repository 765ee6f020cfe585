"""Process-wide anonymous session state: device identity, credentials, continuation flag."""

import uuid
from typing import Optional

from .config import session_logger


class SessionState:
    """
    Holds the anonymous identity the proxy presents upstream.

    One instance is shared by every request and by the refresh loop. Readers
    take whatever values are current at the time they build a request; there
    is no per-request pinning.
    """

    def __init__(self):
        self._device_id: str = ""
        self._token: Optional[str] = None
        self._proof_token: Optional[str] = None
        self._keep_conversation = False
        self.renew()

    def renew(self) -> str:
        """Switch to a fresh random device identity and forget the conversation."""
        self._device_id = str(uuid.uuid4())
        self._keep_conversation = False
        session_logger.info(f"New device id: {self._device_id}")
        return self._device_id

    def current(self) -> str:
        return self._device_id

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def proof_token(self) -> Optional[str]:
        return self._proof_token

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def store_credentials(self, token: str, proof_token: Optional[str] = None) -> None:
        """
        Replace the session token and its proof token together.

        A proof token only holds for the challenge issued with its token, so the
        previous one is dropped even when the new token came without a challenge.
        """
        self._token = token
        self._proof_token = proof_token
        session_logger.info(f"New token: {token}")

    @property
    def keep_conversation(self) -> bool:
        return self._keep_conversation

    def mark_conversation(self, conversation_id: Optional[str]) -> None:
        self._keep_conversation = bool(conversation_id)
