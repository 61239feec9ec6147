"""Caller authentication for API requests.

Three kinds of callers are recognised, checked in this order:

1. Scheduled jobs, which send the operator secret in ``X-Cron-Secret``.
2. Internal callers, which send the service-role key as a bearer token.
3. End users, whose bearer token is validated against the identity
   provider's ``/auth/v1/user`` endpoint.
"""

import hmac
import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from config import settings

logger = logging.getLogger(__name__)


class CallerKind(str, Enum):
    USER = "user"
    INTERNAL = "internal"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Caller:
    """An authenticated caller."""

    kind: CallerKind
    user_id: str | None = None

    @property
    def is_trusted(self) -> bool:
        return self.kind in (CallerKind.INTERNAL, CallerKind.OPERATOR)


class AuthenticationError(Exception):
    """The request carries no usable credential. The message is user-facing."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def _secret_matches(candidate: str | None, expected: str) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class AuthValidator:
    """Resolve request credentials to a :class:`Caller`.

    Args:
        auth_url: Identity provider base URL (defaults to settings)
        api_key: Public key sent to the identity provider as ``apikey``
        service_role_key: Master credential for internal calls
        cron_secret: Operator secret for scheduled jobs
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        auth_url: str | None = None,
        api_key: str | None = None,
        service_role_key: str | None = None,
        cron_secret: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self._auth_url = (auth_url if auth_url is not None else settings.AUTH_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.AUTH_API_KEY
        self._service_role_key = (
            service_role_key if service_role_key is not None else settings.SERVICE_ROLE_KEY
        )
        self._cron_secret = cron_secret if cron_secret is not None else settings.CRON_SECRET
        self._transport = transport
        self._timeout = timeout

    def validate(
        self, authorization: str | None, cron_secret: str | None = None
    ) -> Caller:
        """Authenticate a request from its headers.

        Args:
            authorization: Raw ``Authorization`` header value.
            cron_secret: Raw ``X-Cron-Secret`` header value.

        Returns:
            The authenticated caller.

        Raises:
            AuthenticationError: With a human-readable reason.
        """
        if _secret_matches(cron_secret, self._cron_secret):
            return Caller(kind=CallerKind.OPERATOR)

        if not authorization:
            raise AuthenticationError("Missing authorization header")

        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            raise AuthenticationError("Authorization header must use the Bearer scheme")
        token = token.strip()
        if not token:
            raise AuthenticationError("Missing bearer token")

        if _secret_matches(token, self._service_role_key):
            return Caller(kind=CallerKind.INTERNAL)

        return Caller(kind=CallerKind.USER, user_id=self._fetch_user_id(token))

    def _fetch_user_id(self, token: str) -> str:
        if not self._auth_url:
            logger.error("AUTH_URL is not configured; cannot validate user tokens")
            raise AuthenticationError("Authentication is not configured")

        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(f"{self._auth_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError:
            logger.warning("Identity provider unreachable", exc_info=True)
            raise AuthenticationError("Unable to validate credentials")

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if response.status_code != 200:
            logger.warning(
                "Identity provider returned HTTP %d", response.status_code,
            )
            raise AuthenticationError("Unable to validate credentials")

        try:
            body = response.json()
        except ValueError:
            raise AuthenticationError("Unable to validate credentials")

        user_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationError("Invalid or expired token")
        return user_id
