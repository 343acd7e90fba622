"""In-memory seen-sets shared by the lifecycle manager and the reaper."""

import logging

logger = logging.getLogger(__name__)


class OrderTracking:
    """
    Advisory per-process state; lost on restart.

    reminded: assigned orders that already got their one reminder.
    timeout_reported: pending orders already escalated to admins.
    """

    def __init__(self, reminder_max: int = 1000):
        self.reminder_max = reminder_max
        self.reminded: set[int] = set()
        self.timeout_reported: set[int] = set()

    def mark_reminded(self, order_id: int) -> bool:
        """Returns False if the order was already reminded."""
        if order_id in self.reminded:
            return False
        self.reminded.add(order_id)
        return True

    def mark_timeout_reported(self, order_id: int) -> bool:
        if order_id in self.timeout_reported:
            return False
        self.timeout_reported.add(order_id)
        return True

    def forget(self, order_id: int) -> None:
        """Drop an order from every set (status change or deletion)."""
        self.reminded.discard(order_id)
        self.timeout_reported.discard(order_id)

    def trim_reminders(self) -> bool:
        if len(self.reminded) > self.reminder_max:
            logger.info(f"Reminder tracking exceeded {self.reminder_max} entries; clearing")
            self.reminded.clear()
            return True
        return False

    def clear(self) -> None:
        self.reminded.clear()
        self.timeout_reported.clear()
