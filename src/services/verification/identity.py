"""Out-of-band identity verification (email and phone channels).

Identity is a single boolean trust signal: at least one out-of-band
channel accepted a verification dispatch.  Messages are handed to a
delivery provider; there is no retry or backoff here beyond whatever
the caller does by re-submitting.

Providers
---------
* ``webhook`` -- POSTs the dispatch to an internal notification service.
* ``mock``    -- logs the dispatch and reports success (development).
"""

from __future__ import annotations

import re
from typing import Any, Final
from uuid import uuid4

import httpx
import structlog

from src.models.verification import IdentityVerdict

logger = structlog.get_logger(__name__)

_EMAIL_RE: Final = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_DIGITS_RE: Final = re.compile(r"^\d{8,15}$")

EMAIL_CHANNEL: Final[str] = "email"
PHONE_CHANNEL: Final[str] = "phone"


def normalise_phone(number: str) -> str | None:
    """Return ``+<digits>`` for a plausible number, else *None*."""
    digits = re.sub(r"[\s\-().]", "", number.strip())
    digits = digits.removeprefix("+")
    if not _PHONE_DIGITS_RE.match(digits):
        return None
    return f"+{digits}"


# ---------------------------------------------------------------------------
# Delivery providers
# ---------------------------------------------------------------------------


class _DispatchProviderBase:
    """Abstract base for out-of-band delivery providers."""

    async def send(self, channel: str, to: str) -> dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class _WebhookProvider(_DispatchProviderBase):
    """Hands verification dispatches to an internal notification webhook."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("identity webhook provider requires a URL")
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def send(self, channel: str, to: str) -> dict[str, Any]:
        payload = {
            "channel": channel,
            "to": to,
            "purpose": "mentor_identity_verification",
            "dispatch_id": uuid4().hex,
        }
        response = await self._client.post(self._url, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def close(self) -> None:
        await self._client.aclose()


class _MockProvider(_DispatchProviderBase):
    """Mock provider for local development and testing."""

    async def send(self, channel: str, to: str) -> dict[str, Any]:
        logger.info("mock_identity.sent", channel=channel, to=to)
        return {"status": "mock", "dispatch_id": f"mock_{uuid4().hex[:12]}"}


def build_provider(
    name: str,
    *,
    webhook_url: str = "",
    webhook_token: str = "",
    timeout: float = 10.0,
) -> _DispatchProviderBase:
    if name == "webhook":
        return _WebhookProvider(webhook_url, token=webhook_token, timeout=timeout)
    if name == "mock":
        return _MockProvider()
    raise ValueError(f"Unknown identity provider: {name!r}")


# ---------------------------------------------------------------------------
# IdentityVerifier
# ---------------------------------------------------------------------------


class IdentityVerifier:
    """Dispatches email / phone verification and reports a boolean signal."""

    def __init__(self, provider: _DispatchProviderBase) -> None:
        self._provider = provider

    async def verify_email(self, address: str) -> bool:
        address = address.strip()
        if not _EMAIL_RE.match(address):
            logger.info("identity.email_invalid")
            return False
        return await self._dispatch(EMAIL_CHANNEL, address)

    async def verify_phone(self, number: str) -> bool:
        normalised = normalise_phone(number)
        if normalised is None:
            logger.info("identity.phone_invalid")
            return False
        return await self._dispatch(PHONE_CHANNEL, normalised)

    async def verify(self, email: str | None = None, phone: str | None = None) -> IdentityVerdict:
        """Try every supplied channel; verified iff any succeeded."""
        channels: dict[str, bool] = {}
        if email:
            channels[EMAIL_CHANNEL] = await self.verify_email(email)
        if phone:
            channels[PHONE_CHANNEL] = await self.verify_phone(phone)
        return IdentityVerdict(verified=any(channels.values()), channels=channels)

    async def _dispatch(self, channel: str, to: str) -> bool:
        try:
            await self._provider.send(channel, to)
        except Exception as exc:
            logger.warning("identity.dispatch_failed", channel=channel, error=str(exc))
            return False
        logger.info("identity.dispatched", channel=channel)
        return True

    async def close(self) -> None:
        await self._provider.close()
