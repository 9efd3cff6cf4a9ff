from .restaurants import Restaurant, StaffMember
from .orders import Order, OrderItem, OrderSequence, OrderStatus
from .staffing import StaffAvailability
from .queue import OrderQueueEntry
from .notifications import Notification

__all__ = [
    'Restaurant', 'StaffMember',
    'Order', 'OrderItem', 'OrderSequence', 'OrderStatus',
    'StaffAvailability',
    'OrderQueueEntry',
    'Notification',
]
