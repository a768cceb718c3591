from .stores import Store
from .auth import User, SessionToken
from .customers import Customer
from .inventory import Product, StockLevel, InventoryReservation
from .sales import Sale, SaleLine, SaleRefund
from .repairs import Repair, RepairNote
from .notifications import NotificationOutbox
from .documents import DocumentSequence, ActivityEvent

__all__ = [
    'Store',
    'User', 'SessionToken',
    'Customer',
    'Product', 'StockLevel', 'InventoryReservation',
    'Sale', 'SaleLine', 'SaleRefund',
    'Repair', 'RepairNote',
    'NotificationOutbox',
    'DocumentSequence', 'ActivityEvent',
]
