from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import dashboard_tag, revalidate_tag
from .core.loyalty import (
    DEFAULT_TIERS,
    QR_TYPE,
    check_in_points,
    decode_qr_payload,
    encode_qr_payload,
    generate_qr_token,
    generate_redemption_code,
    resolve_tier,
)
from .core.validation import clean_text
from .enterprise import safe_audit
from .errors import NotFoundError
from .messaging import send_sms_best_effort
from .models import (
    Customer,
    Event,
    EventBooking,
    EventCheckIn,
    LoyaltyMember,
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyQrToken,
    LoyaltyReward,
    LoyaltyTier,
    RewardRedemption,
    utc_now_naive,
)

logger = structlog.get_logger("venueos.loyalty")

VALID_MEMBER_STATUS = {"active", "inactive", "suspended"}
VALID_CHECK_IN_METHODS = {"qr", "manual", "self"}
ADJUSTMENT_TYPES = {"adjusted", "bonus"}
MAX_CODE_ATTEMPTS = 10


# Programme and tiers


def get_or_create_program(db: Session, tenant_id: int) -> LoyaltyProgram:
    program = db.execute(
        select(LoyaltyProgram).where(LoyaltyProgram.tenant_id == tenant_id).order_by(LoyaltyProgram.id.asc())
    ).scalars().first()
    if program:
        return program
    program = LoyaltyProgram(tenant_id=tenant_id, name=settings.LOYALTY_PROGRAM_NAME, active=True)
    db.add(program)
    db.flush()
    for tier in DEFAULT_TIERS:
        db.add(LoyaltyTier(program_id=program.id, **tier))
    db.commit()
    db.refresh(program)
    logger.info("loyalty_program_seeded", tenant_id=tenant_id, program_id=program.id)
    return program


def list_tiers(db: Session, tenant_id: int) -> list[LoyaltyTier]:
    program = get_or_create_program(db, tenant_id)
    return (
        db.query(LoyaltyTier)
        .filter(LoyaltyTier.program_id == program.id)
        .order_by(LoyaltyTier.level.asc())
        .all()
    )


# Members


def get_member(db: Session, tenant_id: int, member_id: int) -> LoyaltyMember:
    row = db.execute(
        select(LoyaltyMember).where(LoyaltyMember.tenant_id == tenant_id, LoyaltyMember.id == member_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Member not found")
    return row


def get_member_by_customer(db: Session, tenant_id: int, customer_id: int) -> LoyaltyMember | None:
    return db.execute(
        select(LoyaltyMember).where(LoyaltyMember.tenant_id == tenant_id, LoyaltyMember.customer_id == customer_id)
    ).scalar_one_or_none()


def list_members(db: Session, tenant_id: int, status: str | None = None, limit: int = 200) -> list[LoyaltyMember]:
    q = db.query(LoyaltyMember).filter(LoyaltyMember.tenant_id == tenant_id)
    if status:
        q = q.filter(LoyaltyMember.status == status.strip().lower())
    return (
        q.order_by(LoyaltyMember.lifetime_points.desc(), LoyaltyMember.id.asc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )


def _add_transaction(
    db: Session,
    member: LoyaltyMember,
    *,
    points: int,
    transaction_type: str,
    description: str,
    reference_type: str | None = None,
    reference_id=None,
    created_by: str | None = None,
) -> LoyaltyPointTransaction:
    row = LoyaltyPointTransaction(
        tenant_id=member.tenant_id,
        member_id=member.id,
        points=points,
        balance_after=member.available_points,
        transaction_type=transaction_type,
        description=description,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        created_by=created_by,
        created_at=utc_now_naive(),
    )
    db.add(row)
    return row


def enroll_member(
    db: Session,
    tenant_id: int,
    *,
    customer_id: int,
    status: str = "active",
    join_date: date | None = None,
    actor_email: str | None = None,
) -> LoyaltyMember:
    customer = db.execute(
        select(Customer).where(Customer.tenant_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if not customer:
        raise NotFoundError("Customer not found")
    if get_member_by_customer(db, tenant_id, customer_id):
        raise ValueError("Customer is already enrolled in the loyalty program")
    member_status = (status or "active").strip().lower()
    if member_status not in VALID_MEMBER_STATUS:
        raise ValueError("Invalid member status")

    program = get_or_create_program(db, tenant_id)
    if not program.active:
        raise ValueError("Loyalty program not configured")
    default_tier = db.execute(
        select(LoyaltyTier).where(LoyaltyTier.program_id == program.id, LoyaltyTier.level == 1)
    ).scalar_one_or_none()
    if not default_tier:
        raise ValueError("Default tier not configured")

    bonus = max(0, int(settings.LOYALTY_WELCOME_BONUS))
    today = utc_now_naive().date()
    member = LoyaltyMember(
        tenant_id=tenant_id,
        customer_id=customer_id,
        program_id=program.id,
        tier_id=default_tier.id,
        status=member_status,
        join_date=join_date or today,
        available_points=bonus,
        total_points=bonus,
        lifetime_points=bonus,
        lifetime_events=0,
        last_activity_date=today,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(member)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Customer is already enrolled in the loyalty program") from exc
    if bonus:
        _add_transaction(
            db,
            member,
            points=bonus,
            transaction_type="bonus",
            description="Welcome bonus",
            reference_type="enrollment",
            reference_id=member.id,
            created_by=actor_email,
        )
    db.commit()
    db.refresh(member)
    logger.info("loyalty_member_enrolled", member_id=member.id, customer_id=customer_id)
    safe_audit(db, tenant_id, "enroll", "loyalty_member", member.id, actor_email=actor_email)

    if customer.mobile_number and customer.sms_opt_in:
        send_sms_best_effort(
            db,
            tenant_id,
            to=customer.mobile_number,
            body=(
                f"Welcome to {program.name}, {customer.first_name}! "
                f"You've got {bonus} bonus points to start you off."
            ),
            customer_id=customer.id,
            metadata={"template_key": "loyalty_welcome", "stage": "enrollment"},
        )
    revalidate_tag(dashboard_tag(tenant_id))
    return member


def update_member(
    db: Session,
    tenant_id: int,
    member_id: int,
    *,
    status: str | None = None,
    notes: str | None = None,
    actor_email: str | None = None,
) -> LoyaltyMember:
    member = get_member(db, tenant_id, member_id)
    if status is not None:
        normalized = status.strip().lower()
        if normalized not in VALID_MEMBER_STATUS:
            raise ValueError("Invalid member status")
        member.status = normalized
    if notes is not None:
        member.notes = clean_text(notes, 1000)
    member.updated_at = utc_now_naive()
    db.commit()
    db.refresh(member)
    safe_audit(db, tenant_id, "update", "loyalty_member", member.id, actor_email=actor_email, payload={"status": member.status})
    return member


def adjust_points(
    db: Session,
    tenant_id: int,
    member_id: int,
    *,
    points: int,
    description: str,
    transaction_type: str = "adjusted",
    actor_email: str | None = None,
) -> LoyaltyMember:
    if transaction_type not in ADJUSTMENT_TYPES:
        raise ValueError("Invalid adjustment type")
    if not points:
        raise ValueError("Points adjustment cannot be zero")
    reason = clean_text(description, 300)
    if not reason:
        raise ValueError("Description is required")
    member = get_member(db, tenant_id, member_id)
    new_balance = member.available_points + int(points)
    if new_balance < 0:
        raise ValueError("Insufficient points for this adjustment")

    member.available_points = new_balance
    if points > 0:
        member.total_points += int(points)
        member.lifetime_points += int(points)
    member.last_activity_date = utc_now_naive().date()
    member.updated_at = utc_now_naive()
    _add_transaction(
        db,
        member,
        points=int(points),
        transaction_type=transaction_type,
        description=reason,
        reference_type="manual_adjustment",
        created_by=actor_email,
    )
    db.commit()
    db.refresh(member)
    safe_audit(
        db,
        tenant_id,
        "adjust_points",
        "loyalty_member",
        member.id,
        actor_email=actor_email,
        payload={"points": int(points), "type": transaction_type},
    )
    return member


def list_member_transactions(db: Session, tenant_id: int, member_id: int, limit: int = 50) -> list[LoyaltyPointTransaction]:
    get_member(db, tenant_id, member_id)
    return (
        db.query(LoyaltyPointTransaction)
        .filter(LoyaltyPointTransaction.tenant_id == tenant_id, LoyaltyPointTransaction.member_id == member_id)
        .order_by(LoyaltyPointTransaction.created_at.desc(), LoyaltyPointTransaction.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def get_loyalty_stats(db: Session, tenant_id: int) -> dict:
    by_status = dict(
        db.execute(
            select(LoyaltyMember.status, func.count(LoyaltyMember.id))
            .where(LoyaltyMember.tenant_id == tenant_id)
            .group_by(LoyaltyMember.status)
        ).all()
    )
    by_tier = {
        name: int(count)
        for name, count in db.execute(
            select(LoyaltyTier.name, func.count(LoyaltyMember.id))
            .join(LoyaltyMember, LoyaltyMember.tier_id == LoyaltyTier.id)
            .where(LoyaltyMember.tenant_id == tenant_id)
            .group_by(LoyaltyTier.name)
        ).all()
    }
    issued = db.execute(
        select(func.coalesce(func.sum(LoyaltyPointTransaction.points), 0)).where(
            LoyaltyPointTransaction.tenant_id == tenant_id,
            LoyaltyPointTransaction.points > 0,
        )
    ).scalar()
    redeemed = db.execute(
        select(func.coalesce(func.sum(LoyaltyPointTransaction.points), 0)).where(
            LoyaltyPointTransaction.tenant_id == tenant_id,
            LoyaltyPointTransaction.transaction_type == "redeemed",
        )
    ).scalar()
    return {
        "total_members": int(sum(by_status.values())),
        "members_by_status": {k: int(v) for k, v in by_status.items()},
        "members_by_tier": by_tier,
        "points_issued": int(issued or 0),
        "points_redeemed": abs(int(redeemed or 0)),
        "pending_redemptions": count_pending_redemptions(db, tenant_id),
    }


# Check-in


def _get_event(db: Session, tenant_id: int, event_id: int) -> Event:
    event = db.execute(select(Event).where(Event.tenant_id == tenant_id, Event.id == event_id)).scalar_one_or_none()
    if not event:
        raise NotFoundError("Event not found")
    return event


def check_in(
    db: Session,
    tenant_id: int,
    *,
    event_id: int,
    customer_id: int,
    method: str = "manual",
    booking_id: int | None = None,
    actor_email: str | None = None,
    qr_token: LoyaltyQrToken | None = None,
) -> dict:
    """
    Checks a member in and awards points. A `qr_token` is marked used in the same
    commit, so a rejected check-in leaves it valid.
    """
    if method not in VALID_CHECK_IN_METHODS:
        raise ValueError("Invalid check-in method")
    event = _get_event(db, tenant_id, event_id)
    member = get_member_by_customer(db, tenant_id, customer_id)
    if not member or member.status != "active":
        raise ValueError("Customer is not a loyalty member")
    already = db.execute(
        select(EventCheckIn.id).where(EventCheckIn.event_id == event_id, EventCheckIn.member_id == member.id)
    ).first()
    if already:
        raise ValueError("Customer already checked in for this event")

    previous_tier = member.tier
    points = check_in_points(settings.LOYALTY_CHECKIN_POINTS, previous_tier.point_multiplier if previous_tier else 1)
    today = utc_now_naive().date()

    row = EventCheckIn(
        tenant_id=tenant_id,
        event_id=event_id,
        customer_id=customer_id,
        member_id=member.id,
        booking_id=booking_id,
        check_in_method=method,
        points_earned=points,
        staff_email=actor_email,
        check_in_time=utc_now_naive(),
    )
    db.add(row)
    member.available_points += points
    member.total_points += points
    member.lifetime_points += points
    member.lifetime_events += 1
    member.last_activity_date = today
    member.updated_at = utc_now_naive()
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Customer already checked in for this event") from exc
    _add_transaction(
        db,
        member,
        points=points,
        transaction_type="earned",
        description="Event check-in",
        reference_type="check_in",
        reference_id=row.id,
        created_by=actor_email,
    )

    tiers = db.query(LoyaltyTier).filter(LoyaltyTier.program_id == member.program_id).all()
    new_tier = resolve_tier(tiers, member.lifetime_events) or previous_tier
    upgraded = bool(new_tier and previous_tier and new_tier.level > previous_tier.level)
    if new_tier and new_tier.id != member.tier_id:
        member.tier_id = new_tier.id
    if qr_token is not None:
        qr_token.used_at = utc_now_naive()
    db.commit()
    db.refresh(member)

    logger.info(
        "loyalty_check_in",
        member_id=member.id,
        event_id=event_id,
        method=method,
        points=points,
        tier_upgraded=upgraded,
    )
    safe_audit(
        db,
        tenant_id,
        "check_in",
        "loyalty_member",
        member.id,
        actor_email=actor_email,
        payload={"event_id": event_id, "method": method, "points": points},
    )
    return {
        "check_in_id": row.id,
        "member_id": member.id,
        "points_earned": points,
        "available_points": member.available_points,
        "tier": new_tier.name if new_tier else None,
        "tier_upgraded": upgraded,
    }


# QR check-in


def generate_event_qr(
    db: Session,
    tenant_id: int,
    *,
    event_id: int,
    booking_id: int | None = None,
) -> dict:
    _get_event(db, tenant_id, event_id)
    if booking_id is not None:
        booking = db.execute(
            select(EventBooking).where(EventBooking.id == booking_id, EventBooking.event_id == event_id)
        ).scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found")

    token = generate_qr_token()
    expires_at = utc_now_naive() + timedelta(hours=settings.LOYALTY_QR_TTL_HOURS)
    db.add(
        LoyaltyQrToken(
            tenant_id=tenant_id,
            event_id=event_id,
            booking_id=booking_id,
            token=token,
            expires_at=expires_at,
            created_at=utc_now_naive(),
        )
    )
    db.commit()
    qr_data = encode_qr_payload(event_id=event_id, booking_id=booking_id, token=token, expires=expires_at)
    return {"qr_data": qr_data, "token": token, "expires_at": expires_at}


def _validate_qr(db: Session, tenant_id: int, qr_data: str) -> tuple[LoyaltyQrToken, Event, Customer | None, LoyaltyMember | None]:
    payload = decode_qr_payload(qr_data)
    if payload.get("type") != QR_TYPE:
        raise ValueError("Invalid QR code type")
    if not payload.get("event_id") or not payload.get("token") or not payload.get("expires"):
        raise ValueError("Invalid QR code data")
    try:
        expires = datetime.fromisoformat(str(payload["expires"]))
    except ValueError as exc:
        raise ValueError("Invalid QR code data") from exc
    if expires.tzinfo is not None:
        expires = expires.replace(tzinfo=None)
    if expires < utc_now_naive():
        raise ValueError("QR code has expired")

    token = db.execute(
        select(LoyaltyQrToken).where(
            LoyaltyQrToken.tenant_id == tenant_id,
            LoyaltyQrToken.token == str(payload["token"]),
            LoyaltyQrToken.event_id == int(payload["event_id"]),
        )
    ).scalar_one_or_none()
    if not token or token.used_at is not None or token.expires_at < utc_now_naive():
        raise ValueError("Invalid or expired QR code")

    event = db.get(Event, token.event_id)
    customer = None
    member = None
    if token.booking_id:
        booking = db.get(EventBooking, token.booking_id)
        if booking:
            customer = booking.customer
            member = get_member_by_customer(db, tenant_id, booking.customer_id)
    if member:
        already = db.execute(
            select(EventCheckIn.id).where(EventCheckIn.event_id == token.event_id, EventCheckIn.member_id == member.id)
        ).first()
        if already:
            raise ValueError("Already checked in for this event")
    return token, event, customer, member


def validate_qr(db: Session, tenant_id: int, qr_data: str) -> dict:
    token, event, customer, member = _validate_qr(db, tenant_id, qr_data)
    return {
        "valid": True,
        "event_id": event.id,
        "event_name": event.name,
        "event_date": event.event_date,
        "booking_id": token.booking_id,
        "customer_id": customer.id if customer else None,
        "customer_name": customer.full_name if customer else None,
        "member_id": member.id if member else None,
        "tier": member.tier.name if member and member.tier else None,
    }


def self_check_in(db: Session, tenant_id: int, qr_data: str) -> dict:
    token, event, customer, member = _validate_qr(db, tenant_id, qr_data)
    if not customer:
        raise ValueError("Invalid QR code data")
    return check_in(
        db,
        tenant_id,
        event_id=event.id,
        customer_id=customer.id,
        method="self",
        booking_id=token.booking_id,
        qr_token=token,
    )


def list_event_check_ins(db: Session, tenant_id: int, event_id: int) -> list[EventCheckIn]:
    _get_event(db, tenant_id, event_id)
    return (
        db.query(EventCheckIn)
        .filter(EventCheckIn.tenant_id == tenant_id, EventCheckIn.event_id == event_id)
        .order_by(EventCheckIn.check_in_time.desc(), EventCheckIn.id.desc())
        .all()
    )


def get_event_check_in_stats(db: Session, tenant_id: int, event_id: int) -> dict:
    rows = list_event_check_ins(db, tenant_id, event_id)
    methods: dict[str, int] = {}
    for row in rows:
        methods[row.check_in_method] = methods.get(row.check_in_method, 0) + 1
    return {
        "event_id": event_id,
        "total_check_ins": len(rows),
        "check_in_methods": methods,
        "total_points_awarded": sum(row.points_earned or 0 for row in rows),
        "qr_check_ins": methods.get("qr", 0),
        "manual_check_ins": methods.get("manual", 0),
        "self_check_ins": methods.get("self", 0),
    }


# Rewards


def get_reward(db: Session, tenant_id: int, reward_id: int) -> LoyaltyReward:
    row = db.execute(
        select(LoyaltyReward).where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.id == reward_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Reward not found")
    return row


def _validate_tier_ref(db: Session, tenant_id: int, tier_id: int | None) -> int | None:
    if tier_id is None:
        return None
    program = get_or_create_program(db, tenant_id)
    tier = db.execute(
        select(LoyaltyTier).where(LoyaltyTier.program_id == program.id, LoyaltyTier.id == tier_id)
    ).scalar_one_or_none()
    if not tier:
        raise ValueError("Tier not found")
    return tier.id


def create_reward(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> LoyaltyReward:
    name = clean_text(data.get("name"), 120)
    if not name:
        raise ValueError("Reward name is required")
    points_cost = int(data.get("points_cost") or 0)
    if points_cost <= 0:
        raise ValueError("Points cost must be greater than zero")
    inventory = data.get("inventory")
    if inventory is not None and inventory < 0:
        raise ValueError("Inventory cannot be negative")
    program = get_or_create_program(db, tenant_id)
    row = LoyaltyReward(
        tenant_id=tenant_id,
        program_id=program.id,
        name=name,
        description=clean_text(data.get("description"), 500),
        points_cost=points_cost,
        category=clean_text(data.get("category"), 40),
        tier_required_id=_validate_tier_ref(db, tenant_id, data.get("tier_required_id")),
        inventory=inventory,
        active=bool(data.get("active", True)),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "loyalty_reward", row.id, actor_email=actor_email, payload={"name": name})
    return row


def update_reward(db: Session, tenant_id: int, reward_id: int, changes: dict, actor_email: str | None = None) -> LoyaltyReward:
    row = get_reward(db, tenant_id, reward_id)
    if changes.get("name") is not None:
        name = clean_text(changes["name"], 120)
        if not name:
            raise ValueError("Reward name is required")
        row.name = name
    if "description" in changes:
        row.description = clean_text(changes["description"], 500)
    if changes.get("points_cost") is not None:
        if int(changes["points_cost"]) <= 0:
            raise ValueError("Points cost must be greater than zero")
        row.points_cost = int(changes["points_cost"])
    if "category" in changes:
        row.category = clean_text(changes["category"], 40)
    if "tier_required_id" in changes:
        row.tier_required_id = _validate_tier_ref(db, tenant_id, changes["tier_required_id"])
    if "inventory" in changes:
        inventory = changes["inventory"]
        if inventory is not None and inventory < 0:
            raise ValueError("Inventory cannot be negative")
        row.inventory = inventory
    if changes.get("active") is not None:
        row.active = bool(changes["active"])
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "loyalty_reward", row.id, actor_email=actor_email)
    return row


def set_reward_inventory(db: Session, tenant_id: int, reward_id: int, inventory: int | None, actor_email: str | None = None) -> LoyaltyReward:
    return update_reward(db, tenant_id, reward_id, {"inventory": inventory}, actor_email=actor_email)


def delete_reward(db: Session, tenant_id: int, reward_id: int, actor_email: str | None = None) -> None:
    row = get_reward(db, tenant_id, reward_id)
    has_redemptions = db.execute(
        select(RewardRedemption.id).where(RewardRedemption.reward_id == row.id).limit(1)
    ).first()
    if has_redemptions:
        row.active = False
        row.updated_at = utc_now_naive()
    else:
        db.delete(row)
    db.commit()
    safe_audit(db, tenant_id, "delete", "loyalty_reward", reward_id, actor_email=actor_email)


def list_rewards(db: Session, tenant_id: int, include_inactive: bool = False) -> list[LoyaltyReward]:
    q = db.query(LoyaltyReward).filter(LoyaltyReward.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(LoyaltyReward.active.is_(True))
    return q.order_by(LoyaltyReward.points_cost.asc(), LoyaltyReward.id.asc()).all()


# Redemptions


def _unique_redemption_code(db: Session) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_redemption_code()
        taken = db.execute(select(RewardRedemption.id).where(RewardRedemption.redemption_code == code)).first()
        if not taken:
            return code
    raise ValueError("Could not generate a unique redemption code")


def redeem_reward(
    db: Session,
    tenant_id: int,
    *,
    member_id: int,
    reward_id: int,
    actor_email: str | None = None,
) -> RewardRedemption:
    member = get_member(db, tenant_id, member_id)
    reward = db.execute(
        select(LoyaltyReward).where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.id == reward_id)
    ).scalar_one_or_none()
    if not reward or not reward.active:
        raise ValueError("Reward not available")
    if reward.inventory is not None and reward.inventory <= 0:
        raise ValueError("Reward is out of stock")
    if reward.tier_required and member.tier and member.tier.level < reward.tier_required.level:
        raise ValueError("Your tier does not qualify for this reward")
    if member.available_points < reward.points_cost:
        raise ValueError("Insufficient points")

    code = _unique_redemption_code(db)
    now = utc_now_naive()
    redemption = RewardRedemption(
        tenant_id=tenant_id,
        member_id=member.id,
        reward_id=reward.id,
        redemption_code=code,
        points_spent=reward.points_cost,
        status="pending",
        generated_at=now,
        expires_at=now + timedelta(hours=settings.LOYALTY_REDEMPTION_TTL_HOURS),
    )
    db.add(redemption)
    try:
        db.flush()
        member.available_points -= reward.points_cost
        member.last_activity_date = now.date()
        member.updated_at = now
        _add_transaction(
            db,
            member,
            points=-reward.points_cost,
            transaction_type="redeemed",
            description=f"Redeemed: {reward.name}",
            reference_type="redemption",
            reference_id=redemption.id,
            created_by=actor_email,
        )
        if reward.inventory is not None:
            reward.inventory -= 1
        db.commit()
    except Exception:
        db.rollback()
        logger.error("loyalty_redemption_rolled_back", member_id=member_id, reward_id=reward_id)
        raise
    db.refresh(redemption)
    logger.info("loyalty_reward_redeemed", redemption_id=redemption.id, member_id=member.id, reward_id=reward.id)
    safe_audit(
        db,
        tenant_id,
        "redeem",
        "loyalty_reward",
        reward.id,
        actor_email=actor_email,
        payload={"member_id": member.id, "code": code},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return redemption


def validate_redemption_code(db: Session, tenant_id: int, code: str) -> RewardRedemption:
    normalized = (code or "").strip().upper()
    row = db.execute(
        select(RewardRedemption).where(
            RewardRedemption.tenant_id == tenant_id,
            RewardRedemption.redemption_code == normalized,
        )
    ).scalar_one_or_none()
    if not row:
        raise ValueError("Invalid redemption code")
    if row.status == "fulfilled":
        raise ValueError("This code has already been used")
    if row.status == "cancelled":
        raise ValueError("This redemption has been cancelled")
    if row.status == "expired" or row.expires_at < utc_now_naive():
        if row.status != "expired":
            row.status = "expired"
            db.commit()
        raise ValueError("This code has expired")
    return row


def _get_redemption(db: Session, tenant_id: int, redemption_id: int) -> RewardRedemption:
    row = db.execute(
        select(RewardRedemption).where(RewardRedemption.tenant_id == tenant_id, RewardRedemption.id == redemption_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Redemption not found")
    return row


def process_redemption(db: Session, tenant_id: int, redemption_id: int, actor_email: str | None = None) -> RewardRedemption:
    row = _get_redemption(db, tenant_id, redemption_id)
    if row.status == "fulfilled":
        raise ValueError("Already redeemed")
    if row.status != "pending":
        raise ValueError(f"Cannot process a {row.status} redemption")
    row.status = "fulfilled"
    row.fulfilled_at = utc_now_naive()
    row.fulfilled_by = actor_email
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "fulfil", "reward_redemption", row.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def cancel_redemption(db: Session, tenant_id: int, redemption_id: int, actor_email: str | None = None) -> RewardRedemption:
    """Cancels a pending redemption and gives the member their points back."""
    row = _get_redemption(db, tenant_id, redemption_id)
    if row.status != "pending":
        raise ValueError("Can only cancel pending redemptions")
    member = row.member
    now = utc_now_naive()
    try:
        row.status = "cancelled"
        member.available_points += row.points_spent
        member.last_activity_date = now.date()
        member.updated_at = now
        _add_transaction(
            db,
            member,
            points=row.points_spent,
            transaction_type="adjusted",
            description="Redemption cancelled - points refunded",
            reference_type="redemption",
            reference_id=row.id,
            created_by=actor_email,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.error("loyalty_redemption_cancel_rolled_back", redemption_id=redemption_id)
        raise
    db.refresh(row)
    logger.info("loyalty_redemption_cancelled", redemption_id=row.id, member_id=member.id, points=row.points_spent)
    safe_audit(
        db,
        tenant_id,
        "cancel",
        "reward_redemption",
        row.id,
        actor_email=actor_email,
        payload={"member_id": member.id, "points_refunded": row.points_spent},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def list_member_redemptions(db: Session, tenant_id: int, member_id: int, limit: int = 100) -> list[RewardRedemption]:
    get_member(db, tenant_id, member_id)
    return (
        db.query(RewardRedemption)
        .filter(RewardRedemption.tenant_id == tenant_id, RewardRedemption.member_id == member_id)
        .order_by(RewardRedemption.generated_at.desc(), RewardRedemption.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def _pending_query(db: Session, tenant_id: int):
    return db.query(RewardRedemption).filter(
        RewardRedemption.tenant_id == tenant_id,
        RewardRedemption.status == "pending",
        RewardRedemption.expires_at > utc_now_naive(),
    )


def list_pending_redemptions(db: Session, tenant_id: int, limit: int = 10) -> list[RewardRedemption]:
    return (
        _pending_query(db, tenant_id)
        .order_by(RewardRedemption.generated_at.desc(), RewardRedemption.id.desc())
        .limit(limit)
        .all()
    )


def count_pending_redemptions(db: Session, tenant_id: int) -> int:
    return int(_pending_query(db, tenant_id).count())
