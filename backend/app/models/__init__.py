from app.models.audit_log import AuditLog
from app.models.availability import ProviderAvailability
from app.models.booking import Booking
from app.models.notification import Notification
from app.models.payment import Payment
from app.models.provider import ArtistRef, Provider, ProviderRef, StudioRef
from app.models.revenue import RevenueAdjustment, RevenuePayout, RevenueRecord, RevenueRefund
from app.models.settlement_run import ReconciliationItem, SettlementRun
from app.models.user import User
from app.models.wallet import Wallet, WalletTransaction
from app.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "AuditLog",
    "User",
    "Provider",
    "ProviderRef",
    "StudioRef",
    "ArtistRef",
    "ProviderAvailability",
    "Booking",
    "Payment",
    "RevenueRecord",
    "RevenueRefund",
    "RevenueAdjustment",
    "RevenuePayout",
    "Wallet",
    "WalletTransaction",
    "SettlementRun",
    "ReconciliationItem",
    "ProcessedWebhookEvent",
    "Notification",
]
