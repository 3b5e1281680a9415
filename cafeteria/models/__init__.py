"""
Domain data models.
"""

from .order import (
    DateRange, DaySelection, ItemCategory, MenuItemSnapshot, NewOrder,
    Order, OrderFilter, OrderStats, OrderStatus,
)
from .user import ChildRef, UserProfile, UserRole
