from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jwt.exceptions import InvalidTokenError
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from .availability import check_availability
from .config import ALGORITHM, SECRET_KEY, TOKEN_URL, configure_logging
from .database import engine, get_session
from .errors import BookingConflict, BookingValidationError, StoreUnavailable
from .lifecycle import CONTRACTED_STATUSES, submit_booking, update_booking_status
from .models import (
    BookingCreate,
    BookingRead,
    BookingStatus,
    BookingStatusUpdate,
    Category,
    CategoryCreate,
    CategoryRead,
    Client,
    ClientCreate,
    ClientRead,
    ClientStats,
    ClientUpdate,
    Item,
    ItemCreate,
    ItemRead,
    ItemUpdate,
    as_utc,
)
from .store import SQLBookingStore, SQLItemStore, store_errors


class TokenData(BaseModel):
    username: str | None = None


class AvailabilityRead(BaseModel):
    busy_items: list[str]
    available: bool


oauth2_scheme = OAuth2PasswordBearer(tokenUrl=TOKEN_URL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    SQLModel.metadata.create_all(engine)
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Party rental API",
    description="API to manage inventory, bookings, clients and categories for an event equipment rental business.",
    version="0.3.0",
)


# --- Error translation ---
@app.exception_handler(BookingConflict)
def booking_conflict_handler(request: Request, exc: BookingConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "busy_items": [
                {"id": item_id, "name": name} for item_id, name in exc.busy_items
            ],
        },
    )


@app.exception_handler(BookingValidationError)
def booking_validation_handler(request: Request, exc: BookingValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)},
    )


@app.exception_handler(StoreUnavailable)
def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


# --- Auth ---
def get_current_user(token: Annotated[str, Depends(oauth2_scheme)]) -> TokenData:
    """Accept bearer tokens issued by the external auth provider."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not SECRET_KEY:
        raise credentials_exception
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        if username is None:
            raise credentials_exception
    except InvalidTokenError:
        raise credentials_exception
    return TokenData(username=username)


@app.get("/health", tags=["Service"], summary="Liveness check")
def health():
    return {"ok": True, "service": "rental-api"}


# --- Inventory Management ---
def _sku_taken(session: Session, sku: str, exclude_id: Optional[str] = None) -> bool:
    query = select(Item).where(Item.sku == sku)
    if exclude_id:
        query = query.where(Item.id != exclude_id)
    return session.exec(query).first() is not None


def _category_name_taken(session: Session, name: str, exclude_id: Optional[str] = None) -> bool:
    query = select(Category).where(Category.name == name)
    if exclude_id:
        query = query.where(Category.id != exclude_id)
    return session.exec(query).first() is not None


def _commit_unique(session: Session, instance, detail: str):
    """Commit and refresh; a unique constraint hit by a concurrent writer is a 400."""
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=400, detail=detail)
    session.refresh(instance)
    return instance


@app.post(
    "/items",
    response_model=ItemRead,
    dependencies=[Depends(get_current_user)],
    summary="Add new item to inventory",
    response_description="Item data",
    tags=["Inventory"],
)
def create_item(item: ItemCreate, session: Session = Depends(get_session)):
    """Add new item to inventory. The SKU must be unique."""
    with store_errors(session, "save item"):
        if _sku_taken(session, item.sku):
            raise HTTPException(status_code=400, detail="SKU already in use")
        db_item = Item(**item.model_dump())
        session.add(db_item)
        return _commit_unique(session, db_item, "SKU already in use")


@app.put(
    "/items/{id}",
    response_model=ItemRead,
    dependencies=[Depends(get_current_user)],
    summary="Update item in inventory",
    response_description="Updated item data",
    tags=["Inventory"],
)
def update_item(id: str, updated_item: ItemUpdate, session: Session = Depends(get_session)):
    """
    Update item in inventory by id. Only the fields sent are changed; name, sku, price
    and quantity can be omitted but not set to null.
    - **id**: Unique ID of item.
    """
    with store_errors(session, "save item"):
        item = session.get(Item, id)
        if not item:
            raise HTTPException(status_code=404, detail="Item not found")
        changes = updated_item.model_dump(exclude_unset=True)
        if "sku" in changes and _sku_taken(session, changes["sku"], exclude_id=id):
            raise HTTPException(status_code=400, detail="SKU already in use")
        for key, value in changes.items():
            setattr(item, key, value)
        return _commit_unique(session, item, "SKU already in use")


@app.delete(
    "/items/{id}",
    dependencies=[Depends(get_current_user)],
    summary="Delete item in inventory",
    tags=["Inventory"],
)
def delete_item(id: str, session: Session = Depends(get_session)):
    """
    Delete item in inventory by id. Bookings that reference it keep the id.
    - **id**: Unique ID of item.
    """
    with store_errors(session, "delete item"):
        item = session.get(Item, id)
        if not item:
            raise HTTPException(status_code=404, detail="Item not found")
        session.delete(item)
        session.commit()
    return {"ok": True}


@app.get(
    "/items",
    response_model=list[ItemRead],
    dependencies=[Depends(get_current_user)],
    summary="List items in inventory",
    response_description="List of items",
    tags=["Inventory"],
)
def list_items(
    session: Session = Depends(get_session),
    name: Optional[str] = Query(
        None,
        description="Filter by item name",
        min_length=1,
        max_length=100,
        examples=["Tropical kit"],
    ),
    category: Optional[str] = Query(
        None,
        description="Filter by item category",
        min_length=1,
        max_length=50,
        examples=["tables"],
    ),
):
    """
    List all items in inventory with optional filtering by name or category.

    - **name**: Optional filter by item name (partial match)
    - **category**: Optional filter by item category (partial match)
    """
    query = select(Item)

    if name:
        query = query.where(Item.name.contains(name))
    if category:
        query = query.where(Item.category.contains(category))

    with store_errors(session, "list items"):
        return session.exec(query.order_by(Item.name)).all()


# --- Categories ---
@app.get(
    "/categories",
    response_model=list[CategoryRead],
    dependencies=[Depends(get_current_user)],
    summary="List categories",
    tags=["Categories"],
)
def list_categories(session: Session = Depends(get_session)):
    with store_errors(session, "list categories"):
        return session.exec(select(Category).order_by(Category.name)).all()


@app.post(
    "/categories",
    response_model=CategoryRead,
    dependencies=[Depends(get_current_user)],
    summary="Create category",
    tags=["Categories"],
)
def create_category(category: CategoryCreate, session: Session = Depends(get_session)):
    with store_errors(session, "save category"):
        if _category_name_taken(session, category.name):
            raise HTTPException(status_code=400, detail="Category already exists")
        db_category = Category(**category.model_dump())
        session.add(db_category)
        return _commit_unique(session, db_category, "Category already exists")


@app.put(
    "/categories/{id}",
    response_model=CategoryRead,
    dependencies=[Depends(get_current_user)],
    summary="Rename category",
    tags=["Categories"],
)
def update_category(id: str, category: CategoryCreate, session: Session = Depends(get_session)):
    """Rename a category. Items and bookings keep the old name."""
    with store_errors(session, "save category"):
        db_category = session.get(Category, id)
        if not db_category:
            raise HTTPException(status_code=404, detail="Category not found")
        if _category_name_taken(session, category.name, exclude_id=id):
            raise HTTPException(status_code=400, detail="Category already exists")
        db_category.name = category.name
        return _commit_unique(session, db_category, "Category already exists")


@app.delete(
    "/categories/{id}",
    dependencies=[Depends(get_current_user)],
    summary="Delete category",
    tags=["Categories"],
)
def delete_category(id: str, session: Session = Depends(get_session)):
    with store_errors(session, "delete category"):
        db_category = session.get(Category, id)
        if not db_category:
            raise HTTPException(status_code=404, detail="Category not found")
        session.delete(db_category)
        session.commit()
    return {"ok": True}


# --- Clients ---
@app.get(
    "/clients",
    response_model=list[ClientRead],
    dependencies=[Depends(get_current_user)],
    summary="List clients",
    tags=["Clients"],
)
def list_clients(session: Session = Depends(get_session)):
    with store_errors(session, "list clients"):
        return session.exec(select(Client).order_by(Client.name)).all()


@app.post(
    "/clients",
    response_model=ClientRead,
    dependencies=[Depends(get_current_user)],
    summary="Create client",
    tags=["Clients"],
)
def create_client(client: ClientCreate, session: Session = Depends(get_session)):
    db_client = Client(**client.model_dump())
    with store_errors(session, "save client"):
        session.add(db_client)
        session.commit()
        session.refresh(db_client)
    return db_client


@app.put(
    "/clients/{id}",
    response_model=ClientRead,
    dependencies=[Depends(get_current_user)],
    summary="Update client",
    tags=["Clients"],
)
def update_client(id: str, updated_client: ClientUpdate, session: Session = Depends(get_session)):
    """Update a client. Past bookings keep their customer snapshot."""
    with store_errors(session, "save client"):
        db_client = session.get(Client, id)
        if not db_client:
            raise HTTPException(status_code=404, detail="Client not found")
        for key, value in updated_client.model_dump(exclude_unset=True).items():
            setattr(db_client, key, value)
        session.commit()
        session.refresh(db_client)
    return db_client


@app.get(
    "/clients/{id}/stats",
    response_model=ClientStats,
    dependencies=[Depends(get_current_user)],
    summary="Booking totals for a client",
    tags=["Clients"],
)
def read_client_stats(id: str, session: Session = Depends(get_session)):
    """
    Count and sum the bookings whose customer name matches the client's current name.
    - **id**: Client ID
    - **confirmed_bookings**: bookings reserved, picked up or returned
    """
    with store_errors(session, "load client"):
        db_client = session.get(Client, id)
    if not db_client:
        raise HTTPException(status_code=404, detail="Client not found")
    total, spent, contracted = SQLBookingStore(session).customer_stats(
        db_client.name, CONTRACTED_STATUSES
    )
    return ClientStats(total_bookings=total, total_spent=spent, confirmed_bookings=contracted)


@app.delete(
    "/clients/{id}",
    dependencies=[Depends(get_current_user)],
    summary="Delete client",
    tags=["Clients"],
)
def delete_client(id: str, session: Session = Depends(get_session)):
    with store_errors(session, "delete client"):
        db_client = session.get(Client, id)
        if not db_client:
            raise HTTPException(status_code=404, detail="Client not found")
        session.delete(db_client)
        session.commit()
    return {"ok": True}


# --- Availability ---
@app.get(
    "/availability",
    response_model=AvailabilityRead,
    dependencies=[Depends(get_current_user)],
    summary="Check which items are busy for a period",
    tags=["Bookings"],
)
def read_availability(
    item_ids: list[str] = Query(..., description="Items to check"),
    start: datetime = Query(..., description="Start of the period"),
    end: datetime = Query(..., description="End of the period"),
    exclude_booking_id: Optional[str] = Query(
        None, description="Booking being edited, ignored in the check"
    ),
    session: Session = Depends(get_session),
):
    """List the requested items already reserved or picked up in an overlapping booking.
    - **item_ids**: Items requested (repeat the parameter)
    - **start**/**end**: Period to check (timezone-aware), boundaries inclusive
    - **exclude_booking_id**: Booking being edited
    """
    if start.tzinfo is None or end.tzinfo is None:
        raise BookingValidationError("Period dates must include a timezone")
    if as_utc(start) > as_utc(end):
        raise BookingValidationError("Period start must not be after its end")
    busy = check_availability(
        SQLBookingStore(session), item_ids, start, end, exclude_booking_id=exclude_booking_id
    )
    return AvailabilityRead(busy_items=sorted(busy), available=not busy)


# --- Booking Routes ---
@app.get(
    "/bookings",
    response_model=list[BookingRead],
    dependencies=[Depends(get_current_user)],
    summary="List all bookings",
    response_description="List of bookings",
    tags=["Bookings"],
)
def list_bookings(
    session: Session = Depends(get_session),
    booking_status: Optional[BookingStatus] = Query(
        None, alias="status", description="Show only bookings in this status"
    ),
    date_from: Optional[datetime] = Query(None, description="Select bookings ending from"),
    date_until: Optional[datetime] = Query(None, description="Select bookings starting until"),
):
    """List bookings ordered by start date, optionally filtered by status and calendar window.
    - **status**: Optional filter on booking status
    - **date_from**: Optional filter, bookings still running at or after this time
    - **date_until**: Optional filter, bookings starting at or before this time
    """
    bookings = SQLBookingStore(session).list_bookings(
        statuses=[booking_status] if booking_status else None,
        starts_on_or_before=as_utc(date_until) if date_until else None,
        ends_on_or_after=as_utc(date_from) if date_from else None,
    )
    return [BookingRead.from_booking(booking) for booking in bookings]


@app.get(
    "/bookings/{id}",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Get booking",
    tags=["Bookings"],
)
def read_booking(id: str, session: Session = Depends(get_session)):
    booking = SQLBookingStore(session).get_booking(id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return BookingRead.from_booking(booking)


@app.post(
    "/bookings",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Create new booking",
    response_description="Booking data",
    tags=["Bookings"],
)
def create_booking(booking: BookingCreate, session: Session = Depends(get_session)):
    """Create new booking. Reserved or picked-up bookings need their items free for the period.
    - **customer**: Name (required) and phone of the customer
    - **items**: Item ids requested
    - **start_date**/**end_date**: Rental period (timezone-aware)
    - **status**: Defaults to budget, which never checks availability
    - **total_value**: Defaults to the sum of item prices
    """
    db_booking = submit_booking(SQLBookingStore(session), SQLItemStore(session), booking)
    return BookingRead.from_booking(db_booking)


@app.put(
    "/bookings/{id}",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Update existing booking",
    response_description="Updated booking data",
    tags=["Bookings"],
)
def update_booking(id: str, updated_booking: BookingCreate, session: Session = Depends(get_session)):
    """
    Replace an existing booking (to change items, period, customer or status).
    - **id**: Booking ID
    """
    store = SQLBookingStore(session)
    db_booking = store.get_booking(id)
    if not db_booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    db_booking = submit_booking(store, SQLItemStore(session), updated_booking, previous=db_booking)
    return BookingRead.from_booking(db_booking)


@app.patch(
    "/bookings/{id}/status",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Change booking status",
    tags=["Bookings"],
)
def change_booking_status(
    id: str, body: BookingStatusUpdate, session: Session = Depends(get_session)
):
    """
    Move a booking to another status. Moving to confirmed or picked_up checks availability.
    - **id**: Booking ID
    """
    store = SQLBookingStore(session)
    if not store.get_booking(id):
        raise HTTPException(status_code=404, detail="Booking not found")
    db_booking = update_booking_status(store, SQLItemStore(session), id, body.status)
    return BookingRead.from_booking(db_booking)


@app.delete(
    "/bookings/{id}",
    dependencies=[Depends(get_current_user)],
    summary="Delete booking",
    tags=["Bookings"],
)
def delete_booking(id: str, session: Session = Depends(get_session)):
    """
    Delete a booking permanently. Use PATCH /bookings/{id}/status to mark it returned instead.
    - **id**: Booking ID.
    """
    store = SQLBookingStore(session)
    if not store.get_booking(id):
        raise HTTPException(status_code=404, detail="Booking not found")
    store.delete_booking(id)
    return {"ok": True}
