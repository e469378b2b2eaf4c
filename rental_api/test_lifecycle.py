from decimal import Decimal

import pytest

from . import lifecycle
from .conftest import RecordingBookingStore, StaticItemStore, ts
from .errors import BookingConflict, BookingValidationError, InvalidTransition, StoreUnavailable
from .lifecycle import (
    STATUS_DISPLAY,
    TRANSITIONS,
    can_transition,
    submit_booking,
    update_booking_status,
)
from .models import Booking, BookingCreate, BookingStatus, Customer, Item
from .store import SQLBookingStore, SQLItemStore

CATALOG = [
    Item(id="chair-1", name="Tiffany chair", price=Decimal("12.50"), sku="CH1"),
    Item(id="table-1", name="Round table", price=Decimal("40.00"), sku="TB1"),
    Item(id="sofa-2", name="Velvet sofa", price=Decimal("150.00"), sku="SF2"),
]


def candidate(status=BookingStatus.BUDGET, items=("chair-1",), start="2024-03-02T00:00:00Z",
              end="2024-03-04T00:00:00Z", **extra):
    data = {
        "customer": Customer(name="Ana Souza", phone="+55 11 99823-1020"),
        "items": list(items),
        "start_date": ts(start),
        "end_date": ts(end),
        "status": status,
    }
    data.update(extra)
    return BookingCreate(**data)


def confirmed_booking(booking_id="b1", items=("chair-1", "table-1")):
    return Booking(
        id=booking_id,
        customer_name="Carlos Mendes",
        items=list(items),
        start_date=ts("2024-03-01T08:00:00Z"),
        end_date=ts("2024-03-03T18:00:00Z"),
        status=BookingStatus.CONFIRMED,
    )


@pytest.fixture
def items():
    return StaticItemStore(CATALOG)


def test_budget_submit_never_queries_overlaps(items):
    store = RecordingBookingStore([confirmed_booking()])
    booking = submit_booking(store, items, candidate(BookingStatus.BUDGET))
    assert "list_bookings" not in store.call_names()
    assert booking.status == BookingStatus.BUDGET


def test_returned_submit_never_queries_overlaps(items):
    store = RecordingBookingStore([confirmed_booking()])
    submit_booking(store, items, candidate(BookingStatus.RETURNED))
    assert "list_bookings" not in store.call_names()


@pytest.mark.parametrize("status", [BookingStatus.CONFIRMED, BookingStatus.PICKED_UP])
def test_blocking_submit_always_queries_overlaps(items, status):
    store = RecordingBookingStore()
    submit_booking(store, items, candidate(status, items=("sofa-2",)))
    assert store.call_names() == ["list_bookings", "insert_booking"]


def test_conflict_names_busy_items_and_writes_nothing(items):
    store = RecordingBookingStore([confirmed_booking()])
    with pytest.raises(BookingConflict) as excinfo:
        submit_booking(store, items, candidate(BookingStatus.CONFIRMED, items=("chair-1", "sofa-2")))
    assert excinfo.value.busy_items == [("chair-1", "Tiffany chair")]
    assert excinfo.value.item_ids == ["chair-1"]
    assert "Tiffany chair" in str(excinfo.value)
    assert "insert_booking" not in store.call_names()


def test_budget_quote_may_overlap_reserved_items(items):
    store = RecordingBookingStore([confirmed_booking()])
    booking = submit_booking(store, items, candidate(BookingStatus.BUDGET, items=("chair-1",)))
    assert booking.items == ["chair-1"]


def test_edit_does_not_conflict_with_itself(items):
    existing = confirmed_booking()
    store = RecordingBookingStore([existing])
    updated = submit_booking(
        store,
        items,
        candidate(
            BookingStatus.PICKED_UP,
            items=existing.items,
            start="2024-03-01T08:00:00Z",
            end="2024-03-03T18:00:00Z",
        ),
        previous=existing,
    )
    assert updated.id == "b1"
    assert updated.status == BookingStatus.PICKED_UP
    assert "insert_booking" not in store.call_names()


def test_store_failure_blocks_confirmation(items):
    class UnavailableStore(RecordingBookingStore):
        def list_bookings(self, **kwargs):
            raise StoreUnavailable("Could not list bookings, please retry")

    store = UnavailableStore()
    with pytest.raises(StoreUnavailable):
        submit_booking(store, items, candidate(BookingStatus.CONFIRMED))
    assert store.bookings == {}


@pytest.mark.parametrize(
    "bad_candidate, message",
    [
        (lambda: candidate(customer=Customer(name="  ")), "Customer name"),
        (lambda: candidate(start="2024-03-05T00:00:00Z", end="2024-03-04T00:00:00Z"), "start"),
        (lambda: candidate(BookingStatus.CONFIRMED, items=()), "at least one item"),
        (lambda: candidate(start="2024-03-02T00:00:00", end="2024-03-04T00:00:00"), "timezone"),
    ],
)
def test_validation_happens_before_store_calls(items, bad_candidate, message):
    store = RecordingBookingStore()
    with pytest.raises(BookingValidationError, match=message):
        submit_booking(store, items, bad_candidate())
    assert store.calls == []


def test_unknown_items_are_rejected(items):
    store = RecordingBookingStore()
    with pytest.raises(BookingValidationError, match="ghost-9"):
        submit_booking(store, items, candidate(items=("chair-1", "ghost-9")))


def test_deleted_item_on_existing_booking_does_not_block_return():
    existing = confirmed_booking(items=("chair-1", "retired-7"))
    store = RecordingBookingStore([existing])
    booking = update_booking_status(store, StaticItemStore(CATALOG), "b1", BookingStatus.RETURNED)
    assert booking.status == BookingStatus.RETURNED
    assert booking.items == ["chair-1", "retired-7"]


def test_total_value_defaults_to_item_prices(items):
    store = RecordingBookingStore()
    booking = submit_booking(store, items, candidate(items=("chair-1", "sofa-2")))
    assert booking.total_value == Decimal("162.50")


def test_explicit_total_value_is_kept(items):
    store = RecordingBookingStore()
    booking = submit_booking(store, items, candidate(total_value=Decimal("99.90")))
    assert booking.total_value == Decimal("99.90")


def test_dates_are_stored_in_utc(items):
    store = RecordingBookingStore()
    booking = submit_booking(
        store, items, candidate(start="2024-03-02T09:00:00-03:00", end="2024-03-02T21:00:00-03:00")
    )
    assert booking.start_date == ts("2024-03-02T12:00:00Z")
    assert booking.start_date.utcoffset().total_seconds() == 0


def test_status_update_into_blocking_status_is_checked(items):
    store = RecordingBookingStore([confirmed_booking()])
    quote = submit_booking(store, items, candidate(items=("chair-1",)))
    with pytest.raises(BookingConflict):
        update_booking_status(store, items, quote.id, BookingStatus.CONFIRMED)
    assert store.bookings[quote.id].status == BookingStatus.BUDGET


def test_status_update_keeps_created_at(items):
    store = RecordingBookingStore()
    quote = submit_booking(store, items, candidate(items=("sofa-2",)))
    created_at = quote.created_at
    confirmed = update_booking_status(store, items, quote.id, BookingStatus.CONFIRMED)
    assert confirmed.created_at == created_at


def test_status_update_of_missing_booking():
    with pytest.raises(KeyError):
        update_booking_status(RecordingBookingStore(), StaticItemStore(), "nope", BookingStatus.RETURNED)


def test_any_status_may_follow_any_status():
    for current in BookingStatus:
        for target in BookingStatus:
            assert can_transition(current, target)


def test_tightened_transition_table_is_enforced(items, monkeypatch):
    monkeypatch.setitem(
        TRANSITIONS, BookingStatus.RETURNED, frozenset({BookingStatus.RETURNED})
    )
    returned = confirmed_booking()
    returned.status = BookingStatus.RETURNED
    store = RecordingBookingStore([returned])
    with pytest.raises(InvalidTransition):
        update_booking_status(store, items, "b1", BookingStatus.CONFIRMED)
    assert lifecycle.can_transition(BookingStatus.BUDGET, BookingStatus.CONFIRMED)


def test_every_status_has_display_data():
    assert set(STATUS_DISPLAY) == set(BookingStatus)
    assert STATUS_DISPLAY[BookingStatus.CONFIRMED].label == "Reserved"


def test_submit_against_database(session, make_item, make_booking):
    make_item("chair-1", name="Tiffany chair")
    make_item("sofa-2", name="Velvet sofa", price="150.00")
    make_booking("b1", ["chair-1"], "2024-03-01T08:00:00Z", "2024-03-03T18:00:00Z")
    bookings, catalog = SQLBookingStore(session), SQLItemStore(session)

    with pytest.raises(BookingConflict):
        submit_booking(bookings, catalog, candidate(BookingStatus.CONFIRMED, items=("chair-1", "sofa-2")))

    booking = submit_booking(bookings, catalog, candidate(BookingStatus.CONFIRMED, items=("sofa-2",)))
    assert bookings.get_booking(booking.id).items == ["sofa-2"]
    assert booking.total_value == Decimal("150.00")
