"""Verification provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class ProviderError(RuntimeError):
    """Raised when the verification provider rejects or fails a call."""


class ProviderUnavailableError(ProviderError):
    """Raised when the provider integration is not configured."""


@dataclass(frozen=True)
class ProviderTransactionRequest:
    session_id: str
    ref_id: str
    document_name: str
    document_number: str
    document_type: str
    callback_url: str
    success_url: Optional[str]
    fail_url: Optional[str]


@dataclass(frozen=True)
class ProviderTransaction:
    onboarding_id: str
    onboarding_url: str
