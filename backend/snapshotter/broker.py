"""HTTP message broker client (QStash) and delivery authentication."""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
from typing import Any, Protocol

import httpx
import jwt

from snapshotter.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "upstash-signature"
WORKER_SECRET_HEADER = "x-worker-secret"
SIGNATURE_ISSUER = "Upstash"
# Seconds of clock skew tolerated on exp/nbf.
SIGNATURE_LEEWAY_S = 5


class BrokerError(RuntimeError):
    pass


class MessageBroker(Protocol):
    async def publish(
        self,
        url: str,
        body: dict[str, Any],
        *,
        delay_seconds: int = 0,
        max_retries: int | None = None,
    ) -> str: ...


class QStashBroker:
    """Publishes JSON messages that the broker POSTs back to ``url``."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.base_url = (base_url or settings.QSTASH_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def publish(
        self,
        url: str,
        body: dict[str, Any],
        *,
        delay_seconds: int = 0,
        max_retries: int | None = None,
    ) -> str:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{int(delay_seconds)}s"
        if max_retries is not None:
            headers["Upstash-Retries"] = str(int(max_retries))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/v2/publish/{url}",
                    content=json.dumps(body),
                    headers=headers,
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise BrokerError(
                f"broker rejected publish: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise BrokerError(f"broker publish failed: {exc}") from exc

        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        message_id = payload.get("messageId") if isinstance(payload, dict) else None
        if not message_id:
            raise BrokerError("broker response carried no messageId")
        return str(message_id)


def _b64url_sha256(raw_body: bytes) -> str:
    digest = hashlib.sha256(raw_body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SignatureVerifier:
    """Checks broker-signed deliveries against the current then the next key."""

    def __init__(self, current_key: str | None, next_key: str | None = None) -> None:
        self.current_key = current_key
        self.next_key = next_key

    @property
    def configured(self) -> bool:
        return bool(self.current_key)

    def _verify_with_key(self, signature: str, raw_body: bytes, key: str) -> bool:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=SIGNATURE_ISSUER,
                leeway=SIGNATURE_LEEWAY_S,
                options={"require": ["iss", "exp", "body"]},
            )
        except jwt.PyJWTError as exc:
            logger.debug("Signature rejected: %s", exc)
            return False
        claimed = str(claims.get("body") or "").rstrip("=")
        return secrets.compare_digest(claimed, _b64url_sha256(raw_body))

    def verify(self, signature: str | None, raw_body: bytes) -> bool:
        if not signature or not self.current_key:
            return False
        keys = [self.current_key]
        if self.next_key and self.next_key != self.current_key:
            keys.append(self.next_key)
        return any(self._verify_with_key(signature, raw_body, key) for key in keys)


def verify_worker_secret(provided: str | None, expected: str | None) -> bool:
    """Constant-time shared-secret check. An unset secret accepts nothing."""
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def build_default_verifier() -> SignatureVerifier:
    if not settings.QSTASH_CURRENT_SIGNING_KEY:
        logger.warning("QSTASH_CURRENT_SIGNING_KEY not set - only worker-secret deliveries are accepted")
    return SignatureVerifier(
        settings.QSTASH_CURRENT_SIGNING_KEY,
        settings.QSTASH_NEXT_SIGNING_KEY,
    )


def build_default_broker() -> MessageBroker | None:
    if not settings.QSTASH_TOKEN:
        logger.warning("QSTASH_TOKEN not configured - snapshot jobs will be skipped")
        return None
    return QStashBroker(settings.QSTASH_TOKEN)
