from datetime import date, datetime, time, timezone

from pydantic import BaseModel, Field, validator


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DeletedOut(BaseModel):
    ok: bool = True
    outcome: str = "deleted"


class CountOut(BaseModel):
    count: int


class PageMeta(BaseModel):
    page: int
    page_size: int
    total: int


# Customers


class CustomerCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    mobile_number: str | None = Field(default=None, max_length=40)
    email: str | None = Field(default=None, max_length=200)
    sms_opt_in: bool = True
    notes: str | None = Field(default=None, max_length=1000)


class CustomerUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    mobile_number: str | None = Field(default=None, max_length=40)
    email: str | None = Field(default=None, max_length=200)
    sms_opt_in: bool | None = None
    notes: str | None = Field(default=None, max_length=1000)


class CustomerOut(BaseModel):
    id: int
    first_name: str
    last_name: str | None = None
    full_name: str
    mobile_number: str | None = None
    email: str | None = None
    sms_opt_in: bool
    notes: str | None = None
    created_at: datetime


class CustomerPage(PageMeta):
    items: list[CustomerOut]


class LabelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    color: str | None = Field(default=None, max_length=7)
    description: str | None = Field(default=None, max_length=500)
    auto_apply_rules: dict | None = None


class LabelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=80)
    color: str | None = Field(default=None, max_length=7)
    description: str | None = Field(default=None, max_length=500)
    auto_apply_rules: dict | None = None


class LabelOut(BaseModel):
    id: int
    name: str
    color: str
    description: str | None = None
    created_at: datetime


class LabelAssign(BaseModel):
    notes: str | None = Field(default=None, max_length=500)


class LabelBulkAssign(BaseModel):
    customer_ids: list[int]


# Events and bookings


class EventCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    event_date: date
    event_time: time | None = None
    capacity: int | None = Field(default=None, ge=0)
    category: str | None = Field(default=None, max_length=80)
    price: float = Field(default=0, ge=0)
    status: str = "scheduled"
    description: str | None = None


class EventUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    event_date: date | None = None
    event_time: time | None = None
    capacity: int | None = Field(default=None, ge=0)
    category: str | None = Field(default=None, max_length=80)
    price: float | None = Field(default=None, ge=0)
    status: str | None = None
    description: str | None = None


class EventOut(BaseModel):
    id: int
    name: str
    event_date: date
    event_time: time | None = None
    capacity: int | None = None
    category: str | None = None
    price: float
    status: str
    description: str | None = None
    booked_seats: int = 0


class BookingCreate(BaseModel):
    event_id: int = Field(gt=0)
    customer_id: int = Field(gt=0)
    seats: int = Field(default=1, ge=0)
    notes: str | None = None


class BookingUpdate(BaseModel):
    seats: int | None = Field(default=None, ge=0)
    notes: str | None = None


class BookingBulkCreate(BaseModel):
    customer_ids: list[int]


class BookingOut(BaseModel):
    id: int
    event_id: int
    customer_id: int
    customer_name: str | None = None
    seats: int
    notes: str | None = None
    created_at: datetime


# Loyalty


class TierOut(BaseModel):
    id: int
    name: str
    level: int
    min_events: int
    point_multiplier: float
    color: str | None = None


class MemberEnroll(BaseModel):
    customer_id: int = Field(gt=0)
    status: str = "active"
    join_date: date | None = None


class MemberUpdate(BaseModel):
    status: str | None = None
    notes: str | None = Field(default=None, max_length=1000)


class MemberOut(BaseModel):
    id: int
    customer_id: int
    customer_name: str | None = None
    tier_id: int
    tier_name: str | None = None
    status: str
    join_date: date
    available_points: int
    total_points: int
    lifetime_points: int
    lifetime_events: int
    last_activity_date: date | None = None


class PointsAdjust(BaseModel):
    points: int
    description: str = Field(min_length=1, max_length=300)
    transaction_type: str = "adjusted"


class PointTransactionOut(BaseModel):
    id: int
    points: int
    balance_after: int
    transaction_type: str
    description: str | None = None
    created_by: str | None = None
    created_at: datetime


class CheckInCreate(BaseModel):
    event_id: int = Field(gt=0)
    customer_id: int = Field(gt=0)
    method: str = Field(default="manual", pattern="^(manual|qr)$")
    booking_id: int | None = None


class CheckInOut(BaseModel):
    check_in_id: int
    member_id: int
    points_earned: int
    available_points: int
    tier: str | None = None
    tier_upgraded: bool


class EventCheckInOut(BaseModel):
    id: int
    event_id: int
    customer_id: int
    customer_name: str | None = None
    member_id: int
    booking_id: int | None = None
    check_in_method: str
    points_earned: int
    staff_email: str | None = None
    check_in_time: datetime


class QrCreate(BaseModel):
    event_id: int = Field(gt=0)
    booking_id: int | None = None


class QrOut(BaseModel):
    qr_data: str
    token: str
    expires_at: datetime


class QrScan(BaseModel):
    qr_data: str = Field(min_length=1, max_length=2000)


class RewardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    points_cost: int = Field(gt=0)
    category: str | None = Field(default=None, max_length=40)
    tier_required_id: int | None = None
    inventory: int | None = Field(default=None, ge=0)
    active: bool = True


class RewardUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    points_cost: int | None = Field(default=None, gt=0)
    category: str | None = Field(default=None, max_length=40)
    tier_required_id: int | None = None
    inventory: int | None = Field(default=None, ge=0)
    active: bool | None = None


class RewardInventorySet(BaseModel):
    inventory: int | None = Field(default=None, ge=0)


class RewardOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    points_cost: int
    category: str | None = None
    tier_required_id: int | None = None
    inventory: int | None = None
    active: bool


class RedeemCreate(BaseModel):
    member_id: int = Field(gt=0)
    reward_id: int = Field(gt=0)


class RedemptionCodeCheck(BaseModel):
    code: str = Field(min_length=3, max_length=16)


class RedemptionOut(BaseModel):
    id: int
    member_id: int
    reward_id: int
    reward_name: str | None = None
    redemption_code: str
    points_spent: int
    status: str
    generated_at: datetime
    expires_at: datetime
    fulfilled_at: datetime | None = None
    fulfilled_by: str | None = None


# Invoices


class VendorCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    contact_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=500)
    vat_number: str | None = Field(default=None, max_length=40)
    payment_terms: int = Field(default=30, ge=0, le=365)
    notes: str | None = Field(default=None, max_length=1000)


class VendorUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    contact_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=500)
    vat_number: str | None = Field(default=None, max_length=40)
    payment_terms: int | None = Field(default=None, ge=0, le=365)
    notes: str | None = Field(default=None, max_length=1000)
    is_active: bool | None = None


class VendorOut(BaseModel):
    id: int
    name: str
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    vat_number: str | None = None
    payment_terms: int
    notes: str | None = None
    is_active: bool


class CatalogItemCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    default_price: float = Field(default=0, ge=0)
    default_vat_rate: float = Field(default=20, ge=0, le=100)


class CatalogItemUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    default_price: float | None = Field(default=None, ge=0)
    default_vat_rate: float | None = Field(default=None, ge=0, le=100)


class CatalogItemOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    default_price: float
    default_vat_rate: float


class LineItemIn(BaseModel):
    catalog_item_id: int | None = None
    description: str = Field(min_length=1, max_length=500)
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)
    discount_percentage: float = Field(default=0, ge=0, le=100)
    vat_rate: float = Field(default=20, ge=0, le=100)


class LineItemOut(BaseModel):
    id: int
    catalog_item_id: int | None = None
    description: str
    quantity: float
    unit_price: float
    discount_percentage: float
    vat_rate: float
    subtotal_amount: float
    discount_amount: float
    vat_amount: float
    total_amount: float


class InvoiceCreate(BaseModel):
    vendor_id: int = Field(gt=0)
    invoice_date: date
    due_date: date | None = None
    reference: str | None = Field(default=None, max_length=200)
    invoice_discount_percentage: float = Field(default=0, ge=0, le=100)
    notes: str | None = None
    internal_notes: str | None = None
    line_items: list[LineItemIn]

    @validator("due_date")
    @classmethod
    def validate_due_after_invoice(cls, value: date | None, values: dict):
        invoice_date = values.get("invoice_date")
        if value and invoice_date and value < invoice_date:
            raise ValueError("due_date must be on or after invoice_date")
        return value


class InvoiceUpdate(BaseModel):
    vendor_id: int | None = Field(default=None, gt=0)
    invoice_date: date | None = None
    due_date: date | None = None
    reference: str | None = Field(default=None, max_length=200)
    invoice_discount_percentage: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    internal_notes: str | None = None
    line_items: list[LineItemIn] | None = None


class InvoiceStatusUpdate(BaseModel):
    status: str = Field(min_length=2, max_length=20)


class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    payment_date: date
    payment_method: str = Field(min_length=2, max_length=20)
    reference: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=500)


class PaymentOut(BaseModel):
    id: int
    amount: float
    payment_date: date
    payment_method: str
    reference: str | None = None
    notes: str | None = None


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    vendor_id: int
    vendor_name: str | None = None
    invoice_date: date
    due_date: date
    reference: str | None = None
    invoice_discount_percentage: float
    subtotal_amount: float
    discount_amount: float
    vat_amount: float
    total_amount: float
    paid_amount: float
    status: str
    notes: str | None = None
    internal_notes: str | None = None
    line_items: list[LineItemOut] = []
    payments: list[PaymentOut] = []


class InvoicePage(PageMeta):
    items: list[InvoiceOut]


class InvoiceSummaryOut(BaseModel):
    total_outstanding: float
    total_overdue: float
    total_this_month: float
    count_draft: int


class RecurringInvoiceCreate(BaseModel):
    vendor_id: int = Field(gt=0)
    frequency: str = Field(pattern="^(weekly|monthly|quarterly|yearly)$")
    start_date: date
    end_date: date | None = None
    days_before_due: int = Field(default=30, ge=0, le=365)
    reference: str | None = Field(default=None, max_length=200)
    invoice_discount_percentage: float = Field(default=0, ge=0, le=100)
    notes: str | None = None
    internal_notes: str | None = None
    is_active: bool = True
    line_items: list[LineItemIn]


class RecurringInvoiceUpdate(BaseModel):
    vendor_id: int | None = Field(default=None, gt=0)
    frequency: str | None = Field(default=None, pattern="^(weekly|monthly|quarterly|yearly)$")
    start_date: date | None = None
    end_date: date | None = None
    next_invoice_date: date | None = None
    days_before_due: int | None = Field(default=None, ge=0, le=365)
    reference: str | None = Field(default=None, max_length=200)
    invoice_discount_percentage: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    internal_notes: str | None = None
    line_items: list[LineItemIn] | None = None


class RecurringInvoiceOut(BaseModel):
    id: int
    vendor_id: int
    frequency: str
    start_date: date
    end_date: date | None = None
    next_invoice_date: date
    days_before_due: int
    reference: str | None = None
    invoice_discount_percentage: float
    is_active: bool
    last_invoice_id: int | None = None
    line_items: list[LineItemIn] = []


class RecurringRunOut(BaseModel):
    generated: int
    invoice_ids: list[int]
    failed: list[dict]


# Parking


class ParkingRateCreate(BaseModel):
    hourly_rate: float = Field(gt=0)
    daily_rate: float = Field(gt=0)
    weekly_rate: float = Field(gt=0)
    monthly_rate: float = Field(gt=0)
    capacity_override: int | None = Field(default=None, ge=0)
    effective_from: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)

    @validator("effective_from")
    @classmethod
    def validate_effective_from(cls, value: datetime | None):
        return _naive_utc(value)


class ParkingRateOut(BaseModel):
    id: int
    effective_from: datetime
    hourly_rate: float
    daily_rate: float
    weekly_rate: float
    monthly_rate: float
    capacity_override: int | None = None
    notes: str | None = None


class ParkingQuoteIn(BaseModel):
    start_at: datetime
    end_at: datetime

    @validator("start_at", "end_at")
    @classmethod
    def validate_naive(cls, value: datetime):
        return _naive_utc(value)


class ParkingQuoteLine(BaseModel):
    unit: str
    quantity: int
    rate: float
    subtotal: float


class ParkingQuoteOut(BaseModel):
    total: float
    hours: int
    breakdown: list[ParkingQuoteLine]


class ParkingBookingCreate(BaseModel):
    customer_first_name: str = Field(min_length=1, max_length=120)
    customer_last_name: str | None = Field(default=None, max_length=120)
    customer_mobile: str = Field(min_length=7, max_length=40)
    customer_email: str | None = Field(default=None, max_length=200)
    vehicle_registration: str = Field(min_length=2, max_length=20)
    vehicle_make: str | None = Field(default=None, max_length=60)
    vehicle_model: str | None = Field(default=None, max_length=60)
    vehicle_colour: str | None = Field(default=None, max_length=40)
    start_at: datetime
    end_at: datetime
    notes: str | None = Field(default=None, max_length=1000)
    override_price: float | None = Field(default=None, ge=0)
    override_reason: str | None = Field(default=None, max_length=300)
    capacity_override: bool = False
    capacity_override_reason: str | None = Field(default=None, max_length=300)
    send_payment_request: bool = False

    @validator("start_at", "end_at")
    @classmethod
    def validate_naive(cls, value: datetime):
        return _naive_utc(value)


class ParkingCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class ParkingBookingUpdate(BaseModel):
    status: str | None = Field(default=None, max_length=20)
    payment_status: str | None = Field(default=None, max_length=20)
    notes: str | None = Field(default=None, max_length=1000)


class ParkingRefund(BaseModel):
    amount: float | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=255)


class ParkingBookingOut(BaseModel):
    id: int
    reference: str
    customer_id: int | None = None
    customer_first_name: str
    customer_last_name: str | None = None
    customer_mobile: str
    customer_email: str | None = None
    vehicle_registration: str
    vehicle_make: str | None = None
    vehicle_model: str | None = None
    vehicle_colour: str | None = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    calculated_price: float
    override_price: float | None = None
    amount_due: float
    pricing_breakdown: list[dict] = []
    status: str
    payment_status: str
    payment_due_at: datetime | None = None
    initial_request_sms_sent: bool
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    notes: str | None = None


class ParkingPaymentOut(BaseModel):
    id: int
    booking_id: int
    amount: float
    currency: str
    status: str
    paypal_order_id: str | None = None
    approve_url: str | None = None
    expires_at: datetime | None = None
    paid_at: datetime | None = None


class ParkingNotificationOut(BaseModel):
    id: int
    channel: str
    event_type: str
    status: str
    message_sid: str | None = None
    sent_at: datetime | None = None
    created_at: datetime


# Rota


class EmployeeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    role: str | None = Field(default=None, max_length=80)


class EmployeeUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    role: str | None = Field(default=None, max_length=80)
    is_active: bool | None = None


class EmployeeOut(BaseModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    is_active: bool


class RotaWeekOut(BaseModel):
    id: int
    week_start: date
    status: str
    has_unpublished_changes: bool
    published_at: datetime | None = None
    published_by: str | None = None


class ShiftCreate(BaseModel):
    week_id: int = Field(gt=0)
    shift_date: date
    start_time: time
    end_time: time
    employee_id: int | None = None
    unpaid_break_minutes: int = Field(default=0, ge=0, le=480)
    department: str | None = Field(default=None, max_length=60)
    notes: str | None = Field(default=None, max_length=500)
    is_overnight: bool = False
    template_id: int | None = None


class ShiftUpdate(BaseModel):
    shift_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    employee_id: int | None = None
    unpaid_break_minutes: int | None = Field(default=None, ge=0, le=480)
    department: str | None = Field(default=None, max_length=60)
    notes: str | None = Field(default=None, max_length=500)
    status: str | None = None
    is_overnight: bool | None = None


class ShiftReassign(BaseModel):
    employee_id: int | None = None


class ShiftMove(BaseModel):
    shift_date: date
    employee_id: int | None = None


class ShiftSick(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class ShiftOut(BaseModel):
    id: int
    week_id: int
    employee_id: int | None = None
    employee_name: str | None = None
    template_id: int | None = None
    shift_date: date
    start_time: time
    end_time: time
    unpaid_break_minutes: int
    department: str | None = None
    status: str
    is_open_shift: bool
    is_overnight: bool
    notes: str | None = None
    sick_reason: str | None = None


class PublishedShiftOut(BaseModel):
    shift_id: int
    employee_id: int | None = None
    employee_name: str | None = None
    shift_date: date
    start_time: time
    end_time: time
    unpaid_break_minutes: int
    department: str | None = None
    status: str
    is_open_shift: bool
    published_at: datetime


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: time
    end_time: time
    unpaid_break_minutes: int = Field(default=0, ge=0, le=480)
    department: str | None = Field(default=None, max_length=60)
    employee_id: int | None = None
    is_active: bool = True


class TemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: time | None = None
    end_time: time | None = None
    unpaid_break_minutes: int | None = Field(default=None, ge=0, le=480)
    department: str | None = Field(default=None, max_length=60)
    employee_id: int | None = None
    is_active: bool | None = None


class TemplateOut(BaseModel):
    id: int
    name: str
    day_of_week: int | None = None
    start_time: time
    end_time: time
    unpaid_break_minutes: int
    department: str | None = None
    employee_id: int | None = None
    is_active: bool


# Cashing up


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class SiteOut(BaseModel):
    id: int
    name: str
    is_active: bool


class TargetsSet(BaseModel):
    targets: dict[int, float | None]


class TargetOut(BaseModel):
    day_of_week: int
    target_amount: float


class BreakdownIn(BaseModel):
    payment_type_code: str = Field(min_length=1, max_length=20)
    payment_type_label: str | None = Field(default=None, max_length=60)
    expected_amount: float = 0
    counted_amount: float = 0


class CashCountIn(BaseModel):
    denomination: float = Field(gt=0)
    quantity: int = Field(default=0, ge=0)


class SessionCreate(BaseModel):
    site_id: int = Field(gt=0)
    session_date: date
    notes: str | None = Field(default=None, max_length=1000)
    breakdowns: list[BreakdownIn] = []
    cash_counts: list[CashCountIn] = []


class SessionUpdate(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)
    breakdowns: list[BreakdownIn] | None = None
    cash_counts: list[CashCountIn] | None = None


class BreakdownOut(BaseModel):
    payment_type_code: str
    payment_type_label: str
    expected_amount: float
    counted_amount: float
    variance_amount: float


class CashCountOut(BaseModel):
    denomination: float
    quantity: int
    total_amount: float


class SessionOut(BaseModel):
    id: int
    site_id: int
    session_date: date
    status: str
    notes: str | None = None
    total_expected_amount: float
    total_counted_amount: float
    total_variance_amount: float
    prepared_by: str | None = None
    approved_by: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    locked_at: datetime | None = None
    breakdowns: list[BreakdownOut] = []
    cash_counts: list[CashCountOut] = []


# Messaging


class SmsSend(BaseModel):
    body: str = Field(min_length=1, max_length=1600)


class BulkSmsSend(BaseModel):
    customer_ids: list[int]
    message: str = Field(min_length=1, max_length=1600)


class SmsResultOut(BaseModel):
    success: bool
    skipped: bool = False
    duplicate: bool = False
    sid: str | None = None
    status: str | None = None
    message_id: int | None = None
    reason: str | None = None


class MessageOut(BaseModel):
    id: int
    customer_id: int | None = None
    direction: str
    body: str | None = None
    to_number: str | None = None
    from_number: str | None = None
    twilio_message_sid: str | None = None
    twilio_status: str | None = None
    read_at: datetime | None = None
    created_at: datetime


class ConversationOut(BaseModel):
    customer_id: int | None = None
    customer_name: str
    mobile_number: str | None = None
    last_message: str | None = None
    last_direction: str | None = None
    last_message_at: datetime
    unread_count: int


class InboxOut(BaseModel):
    conversations: list[ConversationOut]
    total_unread: int


# Menu


class IngredientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    default_unit: str = "each"
    storage_type: str | None = None
    supplier_name: str | None = Field(default=None, max_length=200)
    supplier_sku: str | None = Field(default=None, max_length=80)
    brand: str | None = Field(default=None, max_length=120)
    pack_size: float | None = Field(default=None, ge=0)
    pack_size_unit: str | None = Field(default=None, max_length=20)
    pack_cost: float | None = Field(default=None, ge=0)
    portions_per_pack: float | None = Field(default=None, ge=0)
    wastage_pct: float = Field(default=0, ge=0, le=100)
    shelf_life_days: int | None = Field(default=None, ge=0)
    allergens: list[str] = []
    dietary_flags: list[str] = []
    notes: str | None = Field(default=None, max_length=1000)


class IngredientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    default_unit: str | None = None
    storage_type: str | None = None
    supplier_name: str | None = Field(default=None, max_length=200)
    supplier_sku: str | None = Field(default=None, max_length=80)
    brand: str | None = Field(default=None, max_length=120)
    pack_size: float | None = Field(default=None, ge=0)
    pack_size_unit: str | None = Field(default=None, max_length=20)
    pack_cost: float | None = Field(default=None, ge=0)
    portions_per_pack: float | None = Field(default=None, ge=0)
    wastage_pct: float | None = Field(default=None, ge=0, le=100)
    shelf_life_days: int | None = Field(default=None, ge=0)
    allergens: list[str] | None = None
    dietary_flags: list[str] | None = None
    notes: str | None = Field(default=None, max_length=1000)
    is_active: bool | None = None


class IngredientOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    default_unit: str
    storage_type: str | None = None
    supplier_name: str | None = None
    supplier_sku: str | None = None
    brand: str | None = None
    pack_size: float | None = None
    pack_size_unit: str | None = None
    pack_cost: float | None = None
    portions_per_pack: float | None = None
    wastage_pct: float
    shelf_life_days: int | None = None
    allergens: list[str]
    dietary_flags: list[str]
    notes: str | None = None
    is_active: bool


class IngredientPriceCreate(BaseModel):
    pack_cost: float = Field(ge=0)
    effective_date: date | None = None
    supplier_name: str | None = Field(default=None, max_length=200)
    supplier_sku: str | None = Field(default=None, max_length=80)
    notes: str | None = Field(default=None, max_length=500)


class IngredientPriceOut(BaseModel):
    id: int
    ingredient_id: int
    pack_cost: float
    effective_date: date
    supplier_name: str | None = None
    supplier_sku: str | None = None
    notes: str | None = None


class IngredientParseIn(BaseModel):
    raw_text: str = Field(min_length=1, max_length=6000)


class AiUsageOut(BaseModel):
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float


class IngredientParseOut(BaseModel):
    ingredient: dict
    usage: AiUsageOut


# Platform


class TenantRoleSet(BaseModel):
    email: str = Field(min_length=3, max_length=200)
    role: str = Field(pattern="^(owner|manager|reception)$")


class TenantRoleOut(BaseModel):
    id: int
    email: str
    role: str
    created_at: datetime
    updated_at: datetime


class AuditLogOut(BaseModel):
    id: int
    actor_email: str | None = None
    actor_role: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    request_id: str | None = None
    payload: dict
    created_at: datetime


class JobCreate(BaseModel):
    job_type: str = Field(min_length=2, max_length=80)
    payload: dict = {}
    queue: str = Field(default="default", min_length=1, max_length=40)
    max_attempts: int = Field(default=5, ge=1, le=20)


class JobOut(BaseModel):
    id: int
    queue: str
    job_type: str
    status: str
    attempts: int
    max_attempts: int
    run_after: datetime
    last_error: str | None = None
    created_at: datetime
    finished_at: datetime | None = None
