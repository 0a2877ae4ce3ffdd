from .catalog_service import CatalogService
from .inventory_service import InventoryService
from .promotion_service import PromotionLedger
from .pricing_service import PricingEngine
from .order_service import OrderLedger
from .payment_gateway import PaymentGatewayClient
from .settlement_service import SettlementCoordinator
from .checkout_service import CheckoutService
from .fulfillment_service import FulfillmentService
from .settings_service import SettingsService
from .sweep_service import PendingPaymentSweeper
from .notification_service import NotificationService

__all__ = [
    "CatalogService",
    "InventoryService",
    "PromotionLedger",
    "PricingEngine",
    "OrderLedger",
    "PaymentGatewayClient",
    "SettlementCoordinator",
    "CheckoutService",
    "FulfillmentService",
    "SettingsService",
    "PendingPaymentSweeper",
    "NotificationService",
]
