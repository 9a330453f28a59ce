# apps/pass_sync/services/passes/push.py

from __future__ import annotations

import logging
import ssl
from typing import Any, Dict, Optional, Protocol

import httpx

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.errors import ConfigurationError, PushDeliveryError

log = logging.getLogger("pass_sync.push")


class PushSender(Protocol):
    async def send(self, push_address: str, pass_type_id: str, fields: Dict[str, Any]) -> None:
        """Raise PushDeliveryError when the device could not be notified."""
        ...

    async def aclose(self) -> None:
        ...


class ApnsPushSender:
    """
    Wallet pass update push over APNs HTTP/2.

    - Client TLS identity is the pass signing certificate
    - apns-topic is the pass type identifier
    - The device re-fetches the pass; the body only carries the changed fields
    """

    def __init__(self, client: httpx.AsyncClient, *, base_url: str = "https://api.push.apple.com") -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ApnsPushSender":
        if not settings.pass_signer_cert_path or not settings.pass_signer_key_path:
            raise ConfigurationError("Missing PASS_SIGNER_CERT_PATH or PASS_SIGNER_KEY_PATH for push")

        ctx = ssl.create_default_context()
        ctx.load_cert_chain(
            settings.pass_signer_cert_path,
            settings.pass_signer_key_path,
            password=settings.pass_signer_key_passphrase,
        )
        client = httpx.AsyncClient(http2=True, verify=ctx, timeout=settings.push_timeout_seconds)
        return cls(client, base_url=settings.apns_url)

    async def send(self, push_address: str, pass_type_id: str, fields: Dict[str, Any]) -> None:
        url = f"{self.base_url}/3/device/{push_address}"
        headers = {
            "apns-topic": pass_type_id,
            "apns-push-type": "background",
            "apns-priority": "5",
        }

        try:
            res = await self.client.post(url, headers=headers, json={"aps": {}, "changes": fields})
        except httpx.HTTPError as e:
            raise PushDeliveryError(f"APNs transport error: {e}") from e

        if res.status_code >= 400:
            reason: Optional[str] = None
            try:
                reason = (res.json() or {}).get("reason")
            except ValueError:
                reason = None
            raise PushDeliveryError(
                f"APNs rejected push ({res.status_code}): {reason or res.text or 'unknown'}",
                status=res.status_code,
            )

    async def aclose(self) -> None:
        await self.client.aclose()
