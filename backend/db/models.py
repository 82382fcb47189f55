"""Import every mapped model so Base.metadata and relationship() names are complete."""

from .branch import Branch
from .users import User, UserRole
from .product import Product, ProductVariant
from .customer import Customer
from .document_sequence import DocumentSequence
from .inventory.location import InventoryLocation
from .inventory.stock import StockBalance
from .inventory.movement import StockMovement, StockMovementItem
from .sales import SalesInvoice, SalesItem, SalesPayment
from .service_ticket import ServiceTicket, ServicePayment

__all__ = [
    "Branch",
    "User",
    "UserRole",
    "Product",
    "ProductVariant",
    "Customer",
    "DocumentSequence",
    "InventoryLocation",
    "StockBalance",
    "StockMovement",
    "StockMovementItem",
    "SalesInvoice",
    "SalesItem",
    "SalesPayment",
    "ServiceTicket",
    "ServicePayment",
]
