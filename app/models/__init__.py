from app.models.billing import (  # noqa: F401
    ACTIVE_LIKE_STATUSES,
    BillingCustomer,
    BillingCycle,
    DocumentSequence,
    GatewayProvider,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentGatewayConfig,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from app.models.event_store import WebhookEvent, WebhookEventStatus  # noqa: F401
from app.models.license import LicenseStatus, LicenseType, UserLicense  # noqa: F401
