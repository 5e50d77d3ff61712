"""Public verification provider utilities."""

from services.provider.gateway import (
    BaseProviderGateway,
    HttpProviderGateway,
    get_provider_gateway,
    set_provider_gateway,
)
from services.provider.types import (
    ProviderError,
    ProviderTransaction,
    ProviderTransactionRequest,
    ProviderUnavailableError,
)

__all__ = [
    "BaseProviderGateway",
    "HttpProviderGateway",
    "ProviderError",
    "ProviderTransaction",
    "ProviderTransactionRequest",
    "ProviderUnavailableError",
    "get_provider_gateway",
    "set_provider_gateway",
]
