import datetime
import logging
from typing import Iterable, Optional

from .models import BookingStatus, as_utc
from .store import BookingStore

logger = logging.getLogger("rental_api.availability")

# Statuses that hold physical items. Budget quotes never lock inventory and
# returned bookings have released theirs.
BLOCKING_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.PICKED_UP})


def overlaps(
    start_a: datetime.datetime,
    end_a: datetime.datetime,
    start_b: datetime.datetime,
    end_b: datetime.datetime,
) -> bool:
    """Inclusive interval overlap: ranges touching at one instant overlap."""
    return as_utc(start_a) <= as_utc(end_b) and as_utc(start_b) <= as_utc(end_a)


def check_availability(
    store: BookingStore,
    item_ids: Iterable[str],
    start_date: datetime.datetime,
    end_date: datetime.datetime,
    exclude_booking_id: Optional[str] = None,
) -> set[str]:
    """Return the requested item ids already committed for the period.

    Only bookings in a blocking status count. The store is asked for blocking
    bookings starting on or before ``end_date``; the other half of the overlap
    test is applied here. Bookings with id ``exclude_booking_id`` are skipped so
    an edited booking does not conflict with itself.

    Store failures propagate as StoreUnavailable.
    """
    requested = set(item_ids)
    if not requested:
        return set()

    start_date = as_utc(start_date)
    end_date = as_utc(end_date)

    candidates = store.list_bookings(
        statuses=BLOCKING_STATUSES,
        starts_on_or_before=end_date,
    )

    busy = set()
    for booking in candidates:
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if not overlaps(booking.start_date, booking.end_date, start_date, end_date):
            continue
        busy.update(requested.intersection(booking.items))

    if busy:
        logger.info(
            "Busy items %s for %s..%s", sorted(busy), start_date.isoformat(), end_date.isoformat()
        )
    return busy
