from .auth import User
from .catalog import Product, ProductImage, Category, Tag, product_tags
from .orders import Order, Payment, Refund
from .settlements import Settlement, SettlementAdjustment
from .reviews import Review

__all__ = [
    'User',
    'Product', 'ProductImage', 'Category', 'Tag', 'product_tags',
    'Order', 'Payment', 'Refund',
    'Settlement', 'SettlementAdjustment',
    'Review',
]
