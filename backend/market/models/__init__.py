from .auth import User
from .catalog import Store, Product, CartItem
from .orders import Order, OrderItem, OrderTrackingEvent
from .treasury import Treasury, Payout

__all__ = [
    'User',
    'Store', 'Product', 'CartItem',
    'Order', 'OrderItem', 'OrderTrackingEvent',
    'Treasury', 'Payout',
]
