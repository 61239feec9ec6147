"""Signed OAuth ``state`` tokens binding a broker login to an app user.

The token is ``base64url(payload) + "." + base64url(HMAC-SHA256(payload))``
with a JSON payload of ``{user_id, nonce, issued_at, app_url?}``. It needs
no server-side storage; the HMAC stops a caller from forging another
user's id into the state.

Staleness is reported, not enforced: a state older than the configured
window is still accepted by the callback (with a warning) so that a slow
broker login does not throw the user back to the start. Tokens are not
single-use.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(minutes=10)


class StateDecodeError(ValueError):
    """The state token is malformed, tampered with, or missing a user id."""

    pass


@dataclass(frozen=True)
class OAuthState:
    """Decoded contents of a state token."""

    user_id: str
    nonce: str
    issued_at: int  # epoch milliseconds
    app_url: str | None = None

    def age(self, now_ms: int) -> timedelta:
        return timedelta(milliseconds=now_ms - self.issued_at)

    def is_stale(self, now_ms: int, max_age: timedelta = DEFAULT_MAX_AGE) -> bool:
        return self.age(now_ms) > max_age


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class OAuthStateCodec:
    """Encode and verify signed state tokens.

    Args:
        secret: HMAC key. Must be non-empty.
        max_age: Window after which a decoded state counts as stale.
        clock: Returns the current time in seconds (``time.time``).
    """

    def __init__(
        self,
        secret: str,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("OAuth state signing secret is not configured")
        self._key = secret.encode("utf-8")
        self.max_age = max_age
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def encode(self, user_id: str, app_url: str | None = None) -> str:
        """Create a state token for ``user_id``."""
        if not user_id:
            raise ValueError("user_id is required")
        body = {
            "user_id": user_id,
            "nonce": uuid.uuid4().hex,
            "issued_at": self.now_ms(),
        }
        if app_url:
            body["app_url"] = app_url
        payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def decode(self, token: str | None) -> OAuthState:
        """Verify and decode a state token.

        Raises:
            StateDecodeError: If the token is missing, malformed, carries a
                bad signature, or has no user id.
        """
        if not token:
            raise StateDecodeError("state is empty")

        parts = token.split(".")
        if len(parts) != 2:
            raise StateDecodeError("state is malformed")

        try:
            payload = _b64decode(parts[0])
            signature = _b64decode(parts[1])
        except (binascii.Error, ValueError) as exc:
            raise StateDecodeError("state is not valid base64") from exc

        if not hmac.compare_digest(signature, self._sign(payload)):
            raise StateDecodeError("state signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise StateDecodeError("state payload is not JSON") from exc
        if not isinstance(body, dict):
            raise StateDecodeError("state payload is not an object")

        user_id = body.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise StateDecodeError("state has no user id")

        issued_at = body.get("issued_at")
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise StateDecodeError("state has no issue time")

        app_url = body.get("app_url")
        return OAuthState(
            user_id=user_id,
            nonce=str(body.get("nonce", "")),
            issued_at=issued_at,
            app_url=app_url if isinstance(app_url, str) else None,
        )
