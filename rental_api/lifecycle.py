import logging
from decimal import Decimal
from typing import NamedTuple, Optional

from .availability import BLOCKING_STATUSES, check_availability
from .errors import BookingConflict, BookingValidationError, InvalidTransition
from .models import Booking, BookingCreate, BookingStatus, as_utc
from .store import BookingStore, ItemStore

logger = logging.getLogger("rental_api.lifecycle")

INITIAL_STATUS = BookingStatus.BUDGET

# Statuses counted as closed deals in client stats.
CONTRACTED_STATUSES = BLOCKING_STATUSES | {BookingStatus.RETURNED}

# Permission table for status changes. Every status may currently be set from
# every other one; tighten the workflow here.
TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    status: frozenset(BookingStatus) for status in BookingStatus
}


class StatusDisplay(NamedTuple):
    label: str
    color: str


STATUS_DISPLAY: dict[BookingStatus, StatusDisplay] = {
    BookingStatus.BUDGET: StatusDisplay("Quote", "amber"),
    BookingStatus.CONFIRMED: StatusDisplay("Reserved", "emerald"),
    BookingStatus.PICKED_UP: StatusDisplay("Picked up", "blue"),
    BookingStatus.RETURNED: StatusDisplay("Returned", "slate"),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def requires_availability_check(status: BookingStatus) -> bool:
    return status in BLOCKING_STATUSES


def _item_name(catalog, item_id):
    item = catalog.get(item_id)
    return item.name if item is not None else item_id


def validate_candidate(candidate: BookingCreate) -> None:
    if not candidate.customer.name or not candidate.customer.name.strip():
        raise BookingValidationError("Customer name is required")
    if candidate.start_date.tzinfo is None or candidate.end_date.tzinfo is None:
        raise BookingValidationError("Booking dates must include a timezone")
    if candidate.start_date > candidate.end_date:
        raise BookingValidationError("Booking start must not be after its end")
    if requires_availability_check(candidate.status) and not candidate.items:
        raise BookingValidationError("A reserved booking needs at least one item")


def submit_booking(
    bookings: BookingStore,
    items: ItemStore,
    candidate: BookingCreate,
    previous: Optional[Booking] = None,
) -> Booking:
    """Create or update a booking, checking availability for blocking statuses.

    Raises BookingValidationError for malformed candidates or forbidden status
    changes, BookingConflict when requested items are already committed for the
    period, and StoreUnavailable when the store cannot answer. Nothing is
    written unless every check passes.

    The check and the write are separate round trips; without a serializable
    isolation level two concurrent submits can both pass the check.
    """
    validate_candidate(candidate)
    if previous is not None and not can_transition(previous.status, candidate.status):
        raise InvalidTransition(previous.status, candidate.status)

    previous_status = previous.status if previous is not None else None
    # Items already on the booking may have been deleted from the catalog since.
    held = set(previous.items) if previous is not None else set()
    catalog = {item.id: item for item in items.list_items()}
    unknown = [
        item_id for item_id in candidate.items if item_id not in catalog and item_id not in held
    ]
    if unknown:
        raise BookingValidationError(f"Unknown items: {', '.join(unknown)}")

    start_date = as_utc(candidate.start_date)
    end_date = as_utc(candidate.end_date)

    if requires_availability_check(candidate.status):
        busy = check_availability(
            bookings,
            candidate.items,
            start_date,
            end_date,
            exclude_booking_id=previous.id if previous is not None else None,
        )
        if busy:
            logger.info("Rejected booking for %s: busy items %s", candidate.customer.name, sorted(busy))
            raise BookingConflict(
                (item_id, _item_name(catalog, item_id))
                for item_id in candidate.items
                if item_id in busy
            )

    total_value = candidate.total_value
    if total_value is None:
        total_value = sum(
            (catalog[item_id].price for item_id in candidate.items if item_id in catalog),
            Decimal("0"),
        )

    payload = {
        "customer_name": candidate.customer.name.strip(),
        "customer_phone": candidate.customer.phone,
        "items": list(candidate.items),
        "start_date": start_date,
        "end_date": end_date,
        "total_value": total_value,
        "status": candidate.status,
        "category": candidate.category,
    }
    if previous is None:
        booking = bookings.insert_booking(payload)
        logger.info("Created booking %s with status %s", booking.id, booking.status.value)
    else:
        booking = bookings.update_booking(previous.id, payload)
        logger.info(
            "Updated booking %s: %s -> %s", booking.id, previous_status.value, booking.status.value
        )
    return booking


def candidate_from_booking(booking: Booking, **changes) -> BookingCreate:
    data = {
        "customer": booking.customer,
        "items": list(booking.items),
        "start_date": as_utc(booking.start_date),
        "end_date": as_utc(booking.end_date),
        "total_value": booking.total_value,
        "status": booking.status,
        "category": booking.category,
    }
    data.update(changes)
    return BookingCreate(**data)


def update_booking_status(
    bookings: BookingStore,
    items: ItemStore,
    booking_id: str,
    status: BookingStatus,
) -> Booking:
    """Move an existing booking to ``status`` through submit_booking."""
    booking = bookings.get_booking(booking_id)
    if booking is None:
        raise KeyError(booking_id)
    return submit_booking(
        bookings, items, candidate_from_booking(booking, status=status), previous=booking
    )
