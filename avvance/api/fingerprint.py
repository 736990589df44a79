"""Browser fingerprint adapter for anonymous pre-approval tracking.

Services only see the fingerprint string. Where it lives on the client
is decided here; the default provider keeps it in a cookie.
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from fastapi import Request, Response

FINGERPRINT_PREFIX = "avv_fp_"
_FINGERPRINT_PATTERN = re.compile(r"^avv_fp_[0-9a-f]{32}$")


@dataclass(frozen=True)
class Fingerprint:
    """Fingerprint token and whether it was issued on this request."""

    value: str
    is_new: bool = False


def generate_fingerprint() -> str:
    return FINGERPRINT_PREFIX + uuid.uuid4().hex


class FingerprintProvider(ABC):
    """Reads and issues browser fingerprints."""

    @abstractmethod
    def get_fingerprint(self, request: Request) -> str | None:
        """Return the request's fingerprint, if it carries a valid one."""

    @abstractmethod
    def persist(self, response: Response, fingerprint: Fingerprint) -> None:
        """Hand a newly issued fingerprint back to the client."""

    def get_or_create_fingerprint(self, request: Request) -> Fingerprint:
        """Return the request's fingerprint or issue a new one."""
        existing = self.get_fingerprint(request)
        if existing:
            return Fingerprint(existing)
        return Fingerprint(generate_fingerprint(), is_new=True)


class CookieFingerprintProvider(FingerprintProvider):
    """Stores the fingerprint in a long-lived cookie."""

    def __init__(
        self,
        cookie_name: str = "avvance_browser_id",
        max_age_days: int = 365,
        secure: bool = True,
    ) -> None:
        self.cookie_name = cookie_name
        self.max_age = max_age_days * 86400
        self.secure = secure

    def get_fingerprint(self, request: Request) -> str | None:
        value = request.cookies.get(self.cookie_name)
        if value and _FINGERPRINT_PATTERN.match(value):
            return value
        return None

    def persist(self, response: Response, fingerprint: Fingerprint) -> None:
        if not fingerprint.is_new:
            return
        response.set_cookie(
            self.cookie_name,
            fingerprint.value,
            max_age=self.max_age,
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )
