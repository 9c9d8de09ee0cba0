"""Outbound webhook URL checks.

Endpoints are registered by account owners, so a URL must not point the
delivery workers at loopback or private infrastructure. Only literal hosts
are inspected; DNS is not resolved here.
"""
import ipaddress
from urllib.parse import urlsplit

_ALLOWED_SCHEMES = {"http", "https"}
_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}


class InvalidWebhookUrlError(ValueError):
    """Raised when a webhook URL may not be called."""


def validate_webhook_url(url: str, allow_private: bool = False) -> None:
    """
    Reject URLs the delivery worker must not call.

    Args:
        url: Endpoint URL
        allow_private: Permit loopback/private targets (local development)

    Raises:
        InvalidWebhookUrlError: If the URL is malformed or targets a blocked host
    """
    parts = urlsplit(url)

    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidWebhookUrlError(f"Unsupported URL scheme: {parts.scheme or 'none'}")

    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise InvalidWebhookUrlError("URL has no host")

    if allow_private:
        return

    if hostname in _BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        raise InvalidWebhookUrlError("URL targets a local host")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return

    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        raise InvalidWebhookUrlError("URL targets a private network address")
