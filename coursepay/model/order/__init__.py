from .orm import Base, Order
from .snapshot import (
    OrderSnapshot, STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED,
    TERMINAL_STATUSES, OUTCOMES, PAID_MIRRORS, PAYMENT_MIRROR,
    WRITABLE_FIELDS,
)

__all__ = [
    "Base", "Order", "OrderSnapshot",
    "STATUS_PENDING", "STATUS_COMPLETED", "STATUS_FAILED",
    "TERMINAL_STATUSES", "OUTCOMES", "PAID_MIRRORS", "PAYMENT_MIRROR",
    "WRITABLE_FIELDS",
]
