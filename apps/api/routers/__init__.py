"""Routers package."""

from . import (
    health,
    billing,
    clients,
    documents,
    invoices,
    sessions,
    provider_webhooks,
    internal,
)
