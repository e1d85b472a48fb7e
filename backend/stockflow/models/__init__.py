from .catalog import Product, ProductVariant, StockHistory, PriceHistory
from .sales import Sale, SaleItem
from .notifications import Notification

__all__ = [
    'Product', 'ProductVariant', 'StockHistory', 'PriceHistory',
    'Sale', 'SaleItem',
    'Notification',
]
