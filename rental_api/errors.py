"""Exceptions raised by the availability checker and booking lifecycle."""


class RentalError(Exception):
    """Base exception for rental domain errors."""
    pass


class StoreUnavailable(RentalError):
    """Raised when the booking or item store cannot be reached in time.

    Callers must treat this as "could not verify", never as "available".
    """

    retryable = True


class BookingValidationError(RentalError):
    """Raised when a candidate booking is malformed."""
    pass


class InvalidTransition(BookingValidationError):
    """Raised when the status permission table forbids a transition."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move booking from {current.value} to {target.value}")


class BookingConflict(RentalError):
    """Raised when requested items are committed to an overlapping booking."""

    def __init__(self, busy_items):
        # busy_items: list of (item_id, name) pairs
        self.busy_items = list(busy_items)
        names = ", ".join(name for _, name in self.busy_items)
        super().__init__(f"Items already reserved for this period: {names}")

    @property
    def item_ids(self):
        return [item_id for item_id, _ in self.busy_items]
