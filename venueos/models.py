from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))


class TenantUserRole(Base):
    __tablename__ = "tenant_user_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_tenant_user_roles_email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    email: Mapped[str] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    actor_email: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    action: Mapped[str] = mapped_column(String(80), index=True)
    resource_type: Mapped[str] = mapped_column(String(80), index=True)
    resource_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class BackgroundJob(Base):
    __tablename__ = "background_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int | None] = mapped_column(ForeignKey("tenants.id"), nullable=True, index=True)
    queue: Mapped[str] = mapped_column(String(40), default="default", index=True)
    job_type: Mapped[str] = mapped_column(String(80), index=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    run_after: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    worker_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("tenant_slug", "method", "path", "idempotency_key", name="uq_idempotency_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_slug: Mapped[str] = mapped_column(String(80), index=True)
    method: Mapped[str] = mapped_column(String(10))
    path: Mapped[str] = mapped_column(String(300))
    idempotency_key: Mapped[str] = mapped_column(String(120))
    request_hash: Mapped[str] = mapped_column(String(64))
    status_code: Mapped[int] = mapped_column(Integer)
    content_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    response_body: Mapped[bytes] = mapped_column(LargeBinary, default=b"")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)


# Customers


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("tenant_id", "mobile_number", name="uq_customers_tenant_mobile"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    first_name: Mapped[str] = mapped_column(String(120), index=True)
    last_name: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    mobile_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in [self.first_name, self.last_name] if p)


class CustomerLabel(Base):
    __tablename__ = "customer_labels"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_customer_labels_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(80))
    color: Mapped[str] = mapped_column(String(7), default="#6B7280")
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    auto_apply_rules_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class CustomerLabelAssignment(Base):
    __tablename__ = "customer_label_assignments"
    __table_args__ = (UniqueConstraint("customer_id", "label_id", name="uq_label_assignment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    label_id: Mapped[int] = mapped_column(ForeignKey("customer_labels.id"), index=True)
    auto_assigned: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    label = relationship("CustomerLabel")


# Events


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    event_date: Mapped[date] = mapped_column(Date, index=True)
    event_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    status: Mapped[str] = mapped_column(String(20), default="scheduled", index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class EventBooking(Base):
    __tablename__ = "event_bookings"
    __table_args__ = (UniqueConstraint("event_id", "customer_id", name="uq_event_bookings_event_customer"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    seats: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    event = relationship("Event")
    customer = relationship("Customer")


# Loyalty


class LoyaltyProgram(Base):
    __tablename__ = "loyalty_programs"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_loyalty_programs_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class LoyaltyTier(Base):
    __tablename__ = "loyalty_tiers"
    __table_args__ = (UniqueConstraint("program_id", "level", name="uq_loyalty_tiers_program_level"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    program_id: Mapped[int] = mapped_column(ForeignKey("loyalty_programs.id"), index=True)
    name: Mapped[str] = mapped_column(String(80))
    level: Mapped[int] = mapped_column(Integer)
    min_events: Mapped[int] = mapped_column(Integer, default=0)
    point_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), default=1)
    color: Mapped[str | None] = mapped_column(String(7), nullable=True)


class LoyaltyMember(Base):
    __tablename__ = "loyalty_members"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_id", name="uq_loyalty_members_customer"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    program_id: Mapped[int] = mapped_column(ForeignKey("loyalty_programs.id"))
    tier_id: Mapped[int] = mapped_column(ForeignKey("loyalty_tiers.id"))
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    join_date: Mapped[date] = mapped_column(Date)
    available_points: Mapped[int] = mapped_column(Integer, default=0)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_points: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_events: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    customer = relationship("Customer")
    tier = relationship("LoyaltyTier")


class LoyaltyPointTransaction(Base):
    __tablename__ = "loyalty_point_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id"), index=True)
    points: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    transaction_type: Mapped[str] = mapped_column(String(20), index=True)
    description: Mapped[str | None] = mapped_column(String(300), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class EventCheckIn(Base):
    __tablename__ = "event_check_ins"
    __table_args__ = (UniqueConstraint("event_id", "member_id", name="uq_event_check_ins_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id"), index=True)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("event_bookings.id"), nullable=True)
    check_in_method: Mapped[str] = mapped_column(String(10), default="manual")
    points_earned: Mapped[int] = mapped_column(Integer, default=0)
    staff_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    check_in_time: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    customer = relationship("Customer")
    member = relationship("LoyaltyMember")


class LoyaltyQrToken(Base):
    __tablename__ = "loyalty_qr_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("event_bookings.id"), nullable=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class LoyaltyReward(Base):
    __tablename__ = "loyalty_rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    program_id: Mapped[int] = mapped_column(ForeignKey("loyalty_programs.id"))
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    points_cost: Mapped[int] = mapped_column(Integer)
    category: Mapped[str | None] = mapped_column(String(40), nullable=True)
    tier_required_id: Mapped[int | None] = mapped_column(ForeignKey("loyalty_tiers.id"), nullable=True)
    inventory: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    tier_required = relationship("LoyaltyTier")


class RewardRedemption(Base):
    __tablename__ = "reward_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id"), index=True)
    reward_id: Mapped[int] = mapped_column(ForeignKey("loyalty_rewards.id"), index=True)
    redemption_code: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    points_spent: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_by: Mapped[str | None] = mapped_column(String(200), nullable=True)

    member = relationship("LoyaltyMember")
    reward = relationship("LoyaltyReward")


# Invoicing


class Vendor(Base):
    __tablename__ = "invoice_vendors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200), index=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    vat_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    payment_terms: Mapped[int] = mapped_column(Integer, default=30)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class LineItemCatalog(Base):
    __tablename__ = "line_item_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    default_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    default_vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=20)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class InvoiceSeries(Base):
    __tablename__ = "invoice_series"
    __table_args__ = (UniqueConstraint("tenant_id", "series_code", name="uq_invoice_series_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    series_code: Mapped[str] = mapped_column(String(10))
    current_sequence: Mapped[int] = mapped_column(Integer, default=0)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    invoice_number: Mapped[str] = mapped_column(String(40), index=True)
    vendor_id: Mapped[int] = mapped_column(ForeignKey("invoice_vendors.id"), index=True)
    invoice_date: Mapped[date] = mapped_column(Date, index=True)
    due_date: Mapped[date] = mapped_column(Date, index=True)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    invoice_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    vendor = relationship("Vendor")
    line_items = relationship(
        "InvoiceLineItem", cascade="all, delete-orphan", order_by="InvoiceLineItem.id"
    )
    payments = relationship(
        "InvoicePayment", cascade="all, delete-orphan", order_by="InvoicePayment.id"
    )


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    catalog_item_id: Mapped[int | None] = mapped_column(ForeignKey("line_item_catalog.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(500))
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 3), default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=20)
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)


class InvoicePayment(Base):
    __tablename__ = "invoice_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    payment_date: Mapped[date] = mapped_column(Date)
    payment_method: Mapped[str] = mapped_column(String(20))
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class RecurringInvoice(Base):
    __tablename__ = "recurring_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    vendor_id: Mapped[int] = mapped_column(ForeignKey("invoice_vendors.id"), index=True)
    frequency: Mapped[str] = mapped_column(String(20))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_invoice_date: Mapped[date] = mapped_column(Date, index=True)
    days_before_due: Mapped[int] = mapped_column(Integer, default=30)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    invoice_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    vendor = relationship("Vendor")
    line_items = relationship(
        "RecurringInvoiceLineItem",
        cascade="all, delete-orphan",
        order_by="RecurringInvoiceLineItem.id",
    )


class RecurringInvoiceLineItem(Base):
    __tablename__ = "recurring_invoice_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recurring_invoice_id: Mapped[int] = mapped_column(ForeignKey("recurring_invoices.id"), index=True)
    catalog_item_id: Mapped[int | None] = mapped_column(ForeignKey("line_item_catalog.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(500))
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 3), default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=20)


# Parking


class ParkingRate(Base):
    __tablename__ = "parking_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    weekly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    monthly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    capacity_override: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ParkingBooking(Base):
    __tablename__ = "parking_bookings"
    __table_args__ = (UniqueConstraint("tenant_id", "reference", name="uq_parking_bookings_reference"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    reference: Mapped[str] = mapped_column(String(24), index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True, index=True)
    customer_first_name: Mapped[str] = mapped_column(String(120))
    customer_last_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    customer_mobile: Mapped[str] = mapped_column(String(40))
    customer_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    vehicle_registration: Mapped[str] = mapped_column(String(20), index=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(60), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(60), nullable=True)
    vehicle_colour: Mapped[str | None] = mapped_column(String(40), nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    calculated_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    pricing_breakdown_json: Mapped[str] = mapped_column(Text, default="[]")
    override_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    override_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    capacity_override: Mapped[bool] = mapped_column(Boolean, default=False)
    capacity_override_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending_payment", index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    initial_request_sms_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ParkingBookingPayment(Base):
    __tablename__ = "parking_booking_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("parking_bookings.id"), index=True)
    provider: Mapped[str] = mapped_column(String(20), default="paypal")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    paypal_order_id: Mapped[str | None] = mapped_column(String(80), nullable=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    approve_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ParkingBookingNotification(Base):
    __tablename__ = "parking_booking_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("parking_bookings.id"), index=True)
    channel: Mapped[str] = mapped_column(String(10), default="sms")
    event_type: Mapped[str] = mapped_column(String(40))
    status: Mapped[str] = mapped_column(String(20))
    message_sid: Mapped[str | None] = mapped_column(String(80), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


# Rota


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    role: Mapped[str | None] = mapped_column(String(80), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class RotaWeek(Base):
    __tablename__ = "rota_weeks"
    __table_args__ = (UniqueConstraint("tenant_id", "week_start", name="uq_rota_weeks_start"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    week_start: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(20), default="draft")
    has_unpublished_changes: Mapped[bool] = mapped_column(Boolean, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class RotaShiftTemplate(Base):
    __tablename__ = "rota_shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, default=0)
    department: Mapped[str | None] = mapped_column(String(60), nullable=True)
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class RotaShift(Base):
    __tablename__ = "rota_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("rota_weeks.id"), index=True)
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True, index=True)
    template_id: Mapped[int | None] = mapped_column(ForeignKey("rota_shift_templates.id"), nullable=True)
    shift_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, default=0)
    department: Mapped[str | None] = mapped_column(String(60), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    is_open_shift: Mapped[bool] = mapped_column(Boolean, default=False)
    is_overnight: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sick_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    employee = relationship("Employee")


class RotaPublishedShift(Base):
    __tablename__ = "rota_published_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("rota_weeks.id"), index=True)
    shift_id: Mapped[int] = mapped_column(Integer)
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True)
    shift_date: Mapped[date] = mapped_column(Date)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, default=0)
    department: Mapped[str | None] = mapped_column(String(60), nullable=True)
    status: Mapped[str] = mapped_column(String(20))
    is_open_shift: Mapped[bool] = mapped_column(Boolean, default=False)
    published_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    employee = relationship("Employee")


# Cashing up


class CashingUpSite(Base):
    __tablename__ = "cashing_up_sites"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_cashing_up_sites_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CashingUpTarget(Base):
    __tablename__ = "cashing_up_targets"
    __table_args__ = (UniqueConstraint("site_id", "day_of_week", name="uq_cashing_up_targets_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("cashing_up_sites.id"), index=True)
    day_of_week: Mapped[int] = mapped_column(Integer)
    target_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))


class CashingUpSession(Base):
    __tablename__ = "cashing_up_sessions"
    __table_args__ = (UniqueConstraint("site_id", "session_date", name="uq_cashing_up_sessions_site_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("cashing_up_sites.id"), index=True)
    session_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    total_expected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_counted_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_variance_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    prepared_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    site = relationship("CashingUpSite")
    breakdowns = relationship(
        "CashingUpBreakdown", cascade="all, delete-orphan", order_by="CashingUpBreakdown.id"
    )
    cash_counts = relationship(
        "CashingUpCashCount", cascade="all, delete-orphan", order_by="CashingUpCashCount.id"
    )


class CashingUpBreakdown(Base):
    __tablename__ = "cashing_up_breakdowns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("cashing_up_sessions.id"), index=True)
    payment_type_code: Mapped[str] = mapped_column(String(20))
    payment_type_label: Mapped[str] = mapped_column(String(60))
    expected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    counted_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    variance_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)


class CashingUpCashCount(Base):
    __tablename__ = "cashing_up_cash_counts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("cashing_up_sessions.id"), index=True)
    denomination: Mapped[Decimal] = mapped_column(Numeric(8, 2))
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)


# Messaging


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True, index=True)
    direction: Mapped[str] = mapped_column(String(10), index=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    from_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    twilio_message_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    twilio_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    template_key: Mapped[str | None] = mapped_column(String(80), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)

    customer = relationship("Customer")


class SmsIdempotencyKey(Base):
    __tablename__ = "sms_idempotency_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    request_hash: Mapped[str] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(String(20), default="claimed")
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


# Menu


class MenuIngredient(Base):
    __tablename__ = "menu_ingredients"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_menu_ingredients_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    default_unit: Mapped[str] = mapped_column(String(20), default="each")
    storage_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    supplier_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    supplier_sku: Mapped[str | None] = mapped_column(String(80), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(120), nullable=True)
    pack_size: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    pack_size_unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pack_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    portions_per_pack: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    wastage_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    shelf_life_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allergens_json: Mapped[str] = mapped_column(Text, default="[]")
    dietary_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class MenuIngredientPrice(Base):
    __tablename__ = "menu_ingredient_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    ingredient_id: Mapped[int] = mapped_column(ForeignKey("menu_ingredients.id"), index=True)
    pack_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    effective_date: Mapped[date] = mapped_column(Date)
    supplier_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    supplier_sku: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
