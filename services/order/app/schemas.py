from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from app.recurrence.pattern import MAX_NOTES_LENGTH, as_naive_utc

ScheduleStatusLit = Literal["active", "paused", "ended"]
OrderStatusLit = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]

def _naive(v):
    if isinstance(v, datetime): return as_naive_utc(v)
    if isinstance(v, list): return [as_naive_utc(d) for d in v]
    return v

class RecurrenceIn(BaseModel):
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    days_of_week: Optional[List[int]] = Field(default=None, alias="daysOfWeek")
    include_dates: Optional[List[datetime]] = Field(default=None, alias="includeDates")
    exclude_dates: Optional[List[datetime]] = Field(default=None, alias="excludeDates")
    selected_dates: Optional[List[datetime]] = Field(default=None, alias="selectedDates")
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)
    class Config: populate_by_name = True

    @field_validator("start_date", "end_date", "include_dates", "exclude_dates", "selected_dates")
    @classmethod
    def normalize_utc(cls, v): return _naive(v)

    def changes(self) -> Dict[str, Any]:
        """Only the keys the caller actually sent, named like ``RecurrencePattern``."""
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}

class RecurrenceOut(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    days_of_week: List[int] = []
    include_dates: List[datetime] = []
    exclude_dates: List[datetime] = []
    selected_dates: List[datetime] = []
    notes: Optional[str] = None
    class Config: from_attributes = True

class Address(BaseModel):
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, alias="zipCode")
    country: Optional[str] = None
    phone: Optional[str] = None
    class Config: populate_by_name = True

class LineItemOut(BaseModel):
    product_id: int
    sku: str
    qty: int = Field(ge=1)
    unit_price_cents: int
    line_total_cents: int
    title_snapshot: str
    class Config: from_attributes = True

class ScheduleOut(BaseModel):
    id: int
    order_number: str
    customer_id: str
    status: str
    is_recurring: bool
    schedule_status: str
    next_delivery_at: Optional[datetime] = None
    # read from the ORM "pattern" property, or back from a dumped response
    recurrence: RecurrenceOut = Field(validation_alias=AliasChoices("pattern", "recurrence"))
    items: List[LineItemOut] = []
    shipping_address: Dict[str, Any] = {}
    billing_address: Optional[Dict[str, Any]] = None
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    payment_method: str
    notes: str
    created_at: datetime
    updated_at: datetime
    class Config: from_attributes = True

class OrderOut(BaseModel):
    id: int
    order_number: str
    schedule_id: Optional[int] = None
    customer_id: str
    status: str
    items: List[LineItemOut] = []
    shipping_address: Dict[str, Any] = {}
    billing_address: Optional[Dict[str, Any]] = None
    total_cents: int
    currency: str
    estimated_delivery: Optional[datetime] = None
    notes: str
    created_at: datetime
    class Config: from_attributes = True

class OrderSummary(BaseModel):
    id: int
    order_number: str
    status: str
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    class Config: from_attributes = True

class CreateRecurring(BaseModel):
    source_order_id: int = Field(alias="sourceOrderId")
    is_recurring: bool = Field(default=True, alias="isRecurring")
    recurrence: RecurrenceIn
    next_delivery_at: Optional[datetime] = Field(default=None, alias="nextDeliveryAt")
    schedule_status: ScheduleStatusLit = Field(default="active", alias="scheduleStatus")
    class Config: populate_by_name = True

    @field_validator("next_delivery_at")
    @classmethod
    def normalize_utc(cls, v): return _naive(v)

class ItemIn(BaseModel):
    product_id: int = Field(alias="productId")
    qty: int = Field(ge=1)
    class Config: populate_by_name = True

class UpdateRecurring(BaseModel):
    is_recurring: Optional[bool] = Field(default=None, alias="isRecurring")
    recurrence: Optional[RecurrenceIn] = None
    next_delivery_at: Optional[datetime] = Field(default=None, alias="nextDeliveryAt")
    schedule_status: Optional[ScheduleStatusLit] = Field(default=None, alias="scheduleStatus")
    shipping_address: Optional[Address] = Field(default=None, alias="shippingAddress")
    # replaces every line; prices come from the product store
    items: Optional[List[ItemIn]] = Field(default=None, min_length=1)
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)
    class Config: populate_by_name = True

    @field_validator("next_delivery_at")
    @classmethod
    def normalize_utc(cls, v): return _naive(v)

class AdminUpdateRecurring(UpdateRecurring):
    status: Optional[OrderStatusLit] = None
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")
    billing_address: Optional[Address] = Field(default=None, alias="billingAddress")
    subtotal_cents: Optional[int] = Field(default=None, ge=0, alias="subtotalCents")
    tax_cents: Optional[int] = Field(default=None, ge=0, alias="taxCents")
    shipping_cents: Optional[int] = Field(default=None, ge=0, alias="shippingCents")
    discount_cents: Optional[int] = Field(default=None, ge=0, alias="discountCents")
    total_cents: Optional[int] = Field(default=None, ge=0, alias="totalCents")

class CustomerAction(BaseModel):
    action: Literal["pause", "resume", "end"]

class AdminAction(BaseModel):
    action: Literal["pause", "resume", "end", "force_next_delivery", "skip_next_delivery", "duplicate"]
    next_delivery_at: Optional[datetime] = Field(default=None, alias="nextDeliveryAt")
    class Config: populate_by_name = True

    @field_validator("next_delivery_at")
    @classmethod
    def normalize_utc(cls, v): return _naive(v)

class BulkAction(BaseModel):
    action: Literal["pause", "resume", "end", "delete"]
    ids: List[int] = Field(min_length=1, alias="orderIds")
    class Config: populate_by_name = True

class ScheduleResponse(BaseModel):
    data: ScheduleOut
    message: str

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

class ScheduleList(BaseModel):
    orders: List[ScheduleOut]
    pagination: Pagination
    analytics: Optional[Dict[str, Any]] = None

class ScheduleDetail(BaseModel):
    order: ScheduleOut
    related_orders: List[OrderSummary]

class BatchResultOut(BaseModel):
    processed: int
    created: int
    errors: List[str]
    message: str
    timestamp: datetime
