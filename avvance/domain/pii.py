"""Redaction of personal data before persistence.

Pre-approval webhooks carry customer contact details. Only masked
values are stored; the raw payload is sanitized key by key.
"""

from typing import Any

REDACTED = "[REDACTED]"

PII_KEYS = frozenset(
    {
        "customername",
        "customeremail",
        "customerphone",
        "firstname",
        "lastname",
        "email",
        "mobilephone",
        "phone",
        "street1",
        "street2",
        "address",
        "dateofbirth",
        "dob",
        "ssn",
        "ipaddress",
    }
)


def mask_email(email: str | None) -> str | None:
    """Keep the first character of the local part and the domain."""
    if not email:
        return None
    local, _, domain = email.partition("@")
    if not domain:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: str | None) -> str | None:
    """Keep the last four digits."""
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) < 4:
        return REDACTED
    return f"***{digits[-4:]}"


def mask_name(name: str | None) -> str | None:
    """Reduce a name to initials."""
    if not name:
        return None
    initials = [part[0].upper() + "." for part in name.split() if part]
    return " ".join(initials) or None


def redact_payload(value: Any) -> Any:
    """Return a copy of a JSON-like value with PII fields replaced.

    Args:
        value: Decoded JSON value (dict, list or scalar).

    Returns:
        Sanitized copy safe to persist.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in PII_KEYS else redact_payload(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_payload(item) for item in value]
    return value
