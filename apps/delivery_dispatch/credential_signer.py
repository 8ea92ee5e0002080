"""DoorDash Drive JWT creation and caching.

Every Drive API call carries ``Authorization: Bearer <token>`` where the token
is a short-lived HS256 JWT signed with the developer's base64url signing
secret. Tokens live 300 seconds; a cached token is handed out again only
while it still has more than 15 seconds of validity left.

Example:
    >>> signer = CredentialSigner(
    ...     developer_id="dev-123",
    ...     key_id="key-456",
    ...     signing_secret="c2VjcmV0LXNlY3JldC1zZWNyZXQtc2VjcmV0LTEyMw",
    ... )
    >>> headers = {"Authorization": f"Bearer {signer.get_token()}"}
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import jwt

from libs.common.exceptions import ConfigurationError
from libs.common.log_sanitizer import describe_credential

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 300
TOKEN_REFRESH_MARGIN_SECONDS = 15
TOKEN_AUDIENCE = "doordash"
TOKEN_VERSION_HEADER = "DD-JWT-V1"

DEVELOPER_ID_ENV = "DOORDASH_DEVELOPER_ID"
KEY_ID_ENV = "DOORDASH_KEY_ID"
SIGNING_SECRET_ENV = "DOORDASH_SIGNING_SECRET"


@dataclass(frozen=True)
class Token:
    """Signed token plus its expiry (epoch seconds)."""

    value: str
    expires_at: int


def decode_signing_secret(secret: str) -> bytes:
    """Decode a base64url signing secret, restoring stripped padding.

    Raises:
        ConfigurationError: If the secret is not valid base64url
    """
    cleaned = secret.strip()
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"{SIGNING_SECRET_ENV} is not valid base64url") from e


class CredentialSigner:
    """Builds and caches DoorDash Drive JWTs.

    Attributes:
        developer_id: JWT issuer
        key_id: Access key id, sent as ``kid`` in both header and payload
        clock: Returns the current time in epoch seconds (injectable for tests)
    """

    def __init__(
        self,
        developer_id: str | None,
        key_id: str | None,
        signing_secret: str | None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.developer_id = (developer_id or "").strip()
        self.key_id = (key_id or "").strip()
        self._signing_secret = (signing_secret or "").strip()
        self.clock = clock
        self._cached: Token | None = None

    def _require_credentials(self) -> None:
        for env_name, value in (
            (DEVELOPER_ID_ENV, self.developer_id),
            (KEY_ID_ENV, self.key_id),
            (SIGNING_SECRET_ENV, self._signing_secret),
        ):
            if not value:
                raise ConfigurationError(f"Missing DoorDash credential: {env_name} is not set")

    def get_token(self) -> str:
        """Return a valid bearer token, reusing the cached one when possible.

        Returns:
            Compact JWT string (header.payload.signature)

        Raises:
            ConfigurationError: If a credential is missing/blank or the
                signing secret does not decode
        """
        self._require_credentials()

        now = self.clock()
        if self._cached is not None and now < self._cached.expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._cached.value

        self._cached = self._sign(int(now))
        return self._cached.value

    def _sign(self, issued_at: int) -> Token:
        key = decode_signing_secret(self._signing_secret)
        expires_at = issued_at + TOKEN_TTL_SECONDS
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.developer_id,
            "kid": self.key_id,
            "aud": TOKEN_AUDIENCE,
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
        }
        value = jwt.encode(
            payload,
            key,
            algorithm="HS256",
            headers={"kid": self.key_id, "dd-ver": TOKEN_VERSION_HEADER},
        )

        # Log token ID only, never the token itself
        logger.debug("doordash_token_generated", extra={"jti": jti, "exp": expires_at})
        return Token(value=value, expires_at=expires_at)

    def invalidate(self) -> None:
        """Drop the cached token so the next call signs a fresh one."""
        self._cached = None

    def credential_fingerprint(self) -> str:
        """Describe configured credentials by length and prefix for diagnostics."""
        return "; ".join(
            [
                describe_credential(DEVELOPER_ID_ENV, self.developer_id),
                describe_credential(KEY_ID_ENV, self.key_id),
                describe_credential(SIGNING_SECRET_ENV, self._signing_secret),
            ]
        )
