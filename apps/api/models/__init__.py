"""Models package."""

from .client import Client
from .client_product_config import ClientProductConfig
from .client_api_key import ClientApiKey
from .credit_ledger import CreditLedger
from .pricing_tier import PricingTier
from .verification_session import VerificationSession
from .webhook_log import WebhookLog
from .invoice import Invoice, InvoiceLineItem
from .payment import Payment
from .tenant_billing_period import TenantBillingPeriod
