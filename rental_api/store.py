"""Booking and item stores backed by a SQLModel session.

The availability checker and booking lifecycle only depend on the narrow
``BookingStore``/``ItemStore`` protocols below, so tests can swap in an
in-memory store.
"""

import datetime
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from sqlalchemy import case, func
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlmodel import Session, col, select

from .errors import StoreUnavailable
from .models import Booking, BookingStatus, Item

logger = logging.getLogger("rental_api.store")


class BookingStore(Protocol):
    def list_bookings(
        self,
        statuses: Optional[Iterable[BookingStatus]] = None,
        starts_on_or_before: Optional[datetime.datetime] = None,
        ends_on_or_after: Optional[datetime.datetime] = None,
    ) -> list[Booking]: ...

    def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    def insert_booking(self, payload: dict) -> Booking: ...

    def update_booking(self, booking_id: str, payload: dict) -> Booking: ...

    def delete_booking(self, booking_id: str) -> None: ...


class ItemStore(Protocol):
    def list_items(self) -> list[Item]: ...


@contextmanager
def store_errors(session: Session, action: str):
    """Translate connectivity and timeout failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        session.rollback()
        logger.warning("Store failure during %s: %s", action, exc)
        raise StoreUnavailable(f"Could not {action}, please retry") from exc


class SQLBookingStore:
    def __init__(self, session: Session):
        self.session = session

    def list_bookings(self, statuses=None, starts_on_or_before=None, ends_on_or_after=None):
        query = select(Booking)
        if statuses is not None:
            query = query.where(col(Booking.status).in_(list(statuses)))
        if starts_on_or_before is not None:
            query = query.where(Booking.start_date <= starts_on_or_before)
        if ends_on_or_after is not None:
            query = query.where(Booking.end_date >= ends_on_or_after)
        query = query.order_by(Booking.start_date)
        with store_errors(self.session, "list bookings"):
            return list(self.session.exec(query).all())

    def get_booking(self, booking_id):
        with store_errors(self.session, "load booking"):
            return self.session.get(Booking, booking_id)

    def insert_booking(self, payload):
        booking = Booking(**payload)
        with store_errors(self.session, "save booking"):
            self.session.add(booking)
            self.session.commit()
            self.session.refresh(booking)
        return booking

    def update_booking(self, booking_id, payload):
        with store_errors(self.session, "save booking"):
            booking = self.session.get(Booking, booking_id)
            if booking is None:
                raise KeyError(booking_id)
            for key, value in payload.items():
                setattr(booking, key, value)
            self.session.commit()
            self.session.refresh(booking)
        return booking

    def delete_booking(self, booking_id):
        with store_errors(self.session, "delete booking"):
            booking = self.session.get(Booking, booking_id)
            if booking is not None:
                self.session.delete(booking)
                self.session.commit()

    def customer_stats(self, customer_name: str, counted_statuses: Iterable[BookingStatus]):
        """Booking count, summed value and count in ``counted_statuses`` for one customer name."""
        query = select(
            func.count(Booking.id),
            func.coalesce(func.sum(Booking.total_value), 0),
            func.coalesce(
                func.sum(case((col(Booking.status).in_(list(counted_statuses)), 1), else_=0)), 0
            ),
        ).where(Booking.customer_name == customer_name)
        with store_errors(self.session, "load customer stats"):
            total, spent, counted = self.session.exec(query).one()
        return int(total), Decimal(str(spent)), int(counted)


class SQLItemStore:
    def __init__(self, session: Session):
        self.session = session

    def list_items(self):
        with store_errors(self.session, "list items"):
            return list(self.session.exec(select(Item)).all())
