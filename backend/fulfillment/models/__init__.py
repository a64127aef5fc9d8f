from .catalog import Product, StockMovement
from .orders import Order, OrderItem
from .packing import PackingSession

__all__ = [
    'Product', 'StockMovement',
    'Order', 'OrderItem',
    'PackingSession',
]
