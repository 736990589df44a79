"""Credential checks for inbound requests.

Provides:
- HTTP Basic verification for the Avvance webhook
- Signed tokens for the checkout page's status check
"""

import base64
import binascii
import hashlib
import hmac

import structlog

logger = structlog.get_logger()

WEBHOOK_REALM = 'Basic realm="Avvance Webhook"'


class BasicAuthVerifier:
    """Verifies HTTP Basic credentials in constant time.

    Username and password are both compared on every request and the
    results combined without short-circuiting, so response timing does
    not reveal which part was wrong.
    """

    def __init__(self, username: str, password: str) -> None:
        """Initialize verifier.

        Args:
            username: Expected username.
            password: Expected password.
        """
        self._username = username.encode()
        self._password = password.encode()

    @property
    def configured(self) -> bool:
        return bool(self._username and self._password)

    def verify(self, authorization: str | None) -> bool:
        """Check an Authorization header.

        Args:
            authorization: Raw header value.

        Returns:
            True if the header carries the expected credentials.
        """
        username, password = self._parse(authorization)
        user_ok = hmac.compare_digest(username, self._username)
        password_ok = hmac.compare_digest(password, self._password)
        return bool(self.configured & user_ok & password_ok)

    @staticmethod
    def _parse(authorization: str | None) -> tuple[bytes, bytes]:
        if not authorization:
            return b"", b""
        scheme, _, encoded = authorization.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return b"", b""
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError):
            return b"", b""
        username, separator, password = decoded.partition(b":")
        if not separator:
            return b"", b""
        return username, password


class StatusTokenSigner:
    """Issues and checks tokens that authorize status checks for a session.

    The token is an HMAC of the session reference, handed to the
    checkout page when the session is created.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode()

    def sign(self, session_ref: str) -> str:
        """Create the token for a session reference."""
        return hmac.new(self._secret, session_ref.encode(), hashlib.sha256).hexdigest()

    def verify(self, session_ref: str, token: str | None) -> bool:
        """Check a token for a session reference."""
        if not token:
            return False
        return hmac.compare_digest(self.sign(session_ref), token)
