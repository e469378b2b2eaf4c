import datetime
import enum
import uuid
from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from sqlalchemy import JSON, DateTime, Enum as SAEnum
from sqlmodel import SQLModel, Field


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Normalize a timestamp to UTC; naive values read back from the store are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


############
# ITEM MODEL
############


class ItemBase(SQLModel):
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    sku: str = Field(index=True, unique=True)
    quantity: int = Field(default=1, ge=1)
    photo_url: Optional[str] = None


class Item(ItemBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime.datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True)
    )


class ItemCreate(ItemBase):
    pass


class ItemUpdate(SQLModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    sku: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    photo_url: Optional[str] = None

    @field_validator("name", "sku", "price", "quantity")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class ItemRead(ItemBase):
    id: str
    created_at: datetime.datetime


################
# CATEGORY MODEL
################


class CategoryBase(SQLModel):
    name: str = Field(index=True, unique=True, min_length=1)


class Category(CategoryBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)


class CategoryCreate(CategoryBase):
    pass


class CategoryRead(CategoryBase):
    id: str


##############
# CLIENT MODEL
##############


class ClientBase(SQLModel):
    name: str = Field(index=True, min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class Client(ClientBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)


class ClientCreate(ClientBase):
    pass


class ClientUpdate(SQLModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def reject_blank_name(cls, name):
        if name is None or not name.strip():
            raise ValueError("client name cannot be blank")
        return name


class ClientRead(ClientBase):
    id: str


class ClientStats(SQLModel):
    total_bookings: int
    total_spent: Decimal
    confirmed_bookings: int


###############
# BOOKING MODEL
###############


class BookingStatus(str, enum.Enum):
    BUDGET = "budget"
    CONFIRMED = "confirmed"
    PICKED_UP = "picked_up"
    RETURNED = "returned"


class Customer(SQLModel):
    """Snapshot of the customer at booking time, not a reference to a Client."""

    name: str
    phone: Optional[str] = None


class BookingBase(SQLModel):
    start_date: datetime.datetime
    end_date: datetime.datetime
    status: BookingStatus = BookingStatus.BUDGET
    category: Optional[str] = None


class Booking(BookingBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    customer_name: str
    customer_phone: Optional[str] = None
    items: list[str] = Field(default_factory=list, sa_type=JSON)
    start_date: datetime.datetime = Field(sa_type=DateTime(timezone=True), index=True)
    end_date: datetime.datetime = Field(sa_type=DateTime(timezone=True))
    total_value: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    status: BookingStatus = Field(
        default=BookingStatus.BUDGET,
        sa_type=SAEnum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda statuses: [status.value for status in statuses],
        ),
        index=True,
    )
    created_at: datetime.datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True)
    )

    @property
    def customer(self) -> Customer:
        return Customer(name=self.customer_name, phone=self.customer_phone)


class BookingCreate(BookingBase):
    customer: Customer
    items: list[str] = []
    total_value: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )

    @field_validator("items")
    @classmethod
    def collapse_duplicate_items(cls, items: list[str]) -> list[str]:
        return list(dict.fromkeys(items))


class BookingStatusUpdate(SQLModel):
    status: BookingStatus


class BookingRead(BookingBase):
    id: str
    customer: Customer
    items: list[str]
    total_value: Decimal
    created_at: datetime.datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingRead":
        return cls(
            id=booking.id,
            customer=booking.customer,
            items=list(booking.items),
            start_date=as_utc(booking.start_date),
            end_date=as_utc(booking.end_date),
            total_value=booking.total_value,
            status=booking.status,
            category=booking.category,
            created_at=as_utc(booking.created_at),
        )
