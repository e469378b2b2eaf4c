import datetime
import os
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rental.db")
os.environ.setdefault("SECRET_KEY", "rental-api-test-secret-key-0123456789abcdef")

from sqlmodel import SQLModel, Session

from .database import engine
from .models import Booking, BookingStatus, Item, as_utc


def ts(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


class RecordingBookingStore:
    """In-memory booking store that records every call."""

    def __init__(self, bookings=()):
        self.bookings = {booking.id: booking for booking in bookings}
        self.calls = []

    def list_bookings(self, statuses=None, starts_on_or_before=None, ends_on_or_after=None):
        self.calls.append(("list_bookings", statuses, starts_on_or_before))
        found = []
        for booking in self.bookings.values():
            if statuses is not None and booking.status not in set(statuses):
                continue
            if starts_on_or_before is not None and as_utc(booking.start_date) > as_utc(starts_on_or_before):
                continue
            if ends_on_or_after is not None and as_utc(booking.end_date) < as_utc(ends_on_or_after):
                continue
            found.append(booking)
        return found

    def get_booking(self, booking_id):
        self.calls.append(("get_booking", booking_id))
        return self.bookings.get(booking_id)

    def insert_booking(self, payload):
        self.calls.append(("insert_booking", payload))
        booking = Booking(**payload)
        self.bookings[booking.id] = booking
        return booking

    def update_booking(self, booking_id, payload):
        self.calls.append(("update_booking", booking_id, payload))
        booking = self.bookings[booking_id]
        for key, value in payload.items():
            setattr(booking, key, value)
        return booking

    def delete_booking(self, booking_id):
        self.calls.append(("delete_booking", booking_id))
        self.bookings.pop(booking_id, None)

    def call_names(self):
        return [call[0] for call in self.calls]


class StaticItemStore:
    def __init__(self, items=()):
        self.items = list(items)

    def list_items(self):
        return list(self.items)


@pytest.fixture(autouse=True)
def reset_database():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_item(session):
    def _make_item(item_id, name=None, price="10.00", sku=None, quantity=1):
        item = Item(
            id=item_id,
            name=name or item_id.replace("-", " ").title(),
            price=Decimal(price),
            sku=sku or item_id.upper(),
            quantity=quantity,
        )
        session.add(item)
        session.commit()
        session.refresh(item)
        return item

    return _make_item


@pytest.fixture
def make_booking(session):
    def _make_booking(
        booking_id,
        items,
        start,
        end,
        status=BookingStatus.CONFIRMED,
        customer_name="Ana Souza",
        total_value="0",
    ):
        booking = Booking(
            id=booking_id,
            customer_name=customer_name,
            items=list(items),
            start_date=ts(start),
            end_date=ts(end),
            status=status,
            total_value=Decimal(total_value),
        )
        session.add(booking)
        session.commit()
        session.refresh(booking)
        return booking

    return _make_booking
