"""Verification provider gateway abstraction with an HTTP default."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from config import settings
from services.crypto import decrypt_json_envelope
from services.provider.types import (
    ProviderError,
    ProviderTransaction,
    ProviderTransactionRequest,
    ProviderUnavailableError,
)
from services.signature import SignatureError, verify_signature

logger = logging.getLogger(__name__)


class BaseProviderGateway(ABC):
    provider_name: str

    @abstractmethod
    async def create_transaction(self, request: ProviderTransactionRequest) -> ProviderTransaction:
        raise NotImplementedError

    @abstractmethod
    def decrypt_payload(self, ciphertext: str) -> Dict[str, Any]:
        raise NotImplementedError

    @property
    def signature_verification_enabled(self) -> bool:
        return False

    def verify_callback_signature(self, signature: str, ref_id: str, request_time: str) -> bool:
        return True


class HttpProviderGateway(BaseProviderGateway):
    """Talks to the provider's REST API; decrypts Fernet-wrapped callbacks."""

    provider_name = "http_provider"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        encryption_key: str,
        webhook_secret: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.encryption_key = encryption_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def create_transaction(self, request: ProviderTransactionRequest) -> ProviderTransaction:
        if not self.base_url or not self.api_key:
            raise ProviderUnavailableError("Verification provider is not configured (PROVIDER_API_URL/PROVIDER_API_KEY).")

        body = {
            "ref_id": request.ref_id,
            "document_name": request.document_name,
            "document_number": request.document_number,
            "document_type": request.document_type,
            "callback_url": request.callback_url,
            "success_url": request.success_url,
            "fail_url": request.fail_url,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/transactions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(f"Provider returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned a non-JSON response") from exc

        onboarding_id = str(payload.get("onboarding_id") or "").strip()
        onboarding_url = str(payload.get("onboarding_url") or "").strip()
        if not onboarding_id or not onboarding_url:
            raise ProviderError("Provider response missing onboarding_id or onboarding_url")
        return ProviderTransaction(onboarding_id=onboarding_id, onboarding_url=onboarding_url)

    def decrypt_payload(self, ciphertext: str) -> Dict[str, Any]:
        if not self.encryption_key:
            raise ProviderUnavailableError("PROVIDER_ENCRYPTION_KEY is not configured.")
        return decrypt_json_envelope(ciphertext, self.encryption_key)

    @property
    def signature_verification_enabled(self) -> bool:
        return bool(self.webhook_secret)

    def verify_callback_signature(self, signature: str, ref_id: str, request_time: str) -> bool:
        if not self.webhook_secret:
            return True
        try:
            verify_signature(ref_id, signature, request_time, self.webhook_secret)
        except SignatureError as exc:
            logger.warning("Provider callback signature rejected for ref_id=%s: %s", ref_id, exc)
            return False
        return True


_gateway: Optional[BaseProviderGateway] = None


def get_provider_gateway() -> BaseProviderGateway:
    global _gateway
    if _gateway is None:
        _gateway = HttpProviderGateway(
            base_url=settings.PROVIDER_API_URL,
            api_key=settings.PROVIDER_API_KEY,
            encryption_key=settings.PROVIDER_ENCRYPTION_KEY,
            webhook_secret=settings.PROVIDER_WEBHOOK_SECRET,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    return _gateway


def set_provider_gateway(gateway: Optional[BaseProviderGateway]) -> None:
    global _gateway
    _gateway = gateway
