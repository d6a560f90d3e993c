from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .loyalty import (
    adjust_points,
    cancel_redemption,
    check_in,
    create_reward,
    delete_reward,
    enroll_member,
    generate_event_qr,
    get_event_check_in_stats,
    get_loyalty_stats,
    get_member,
    list_event_check_ins,
    list_member_redemptions,
    list_member_transactions,
    list_members,
    list_pending_redemptions,
    list_rewards,
    list_tiers,
    process_redemption,
    redeem_reward,
    self_check_in,
    set_reward_inventory,
    update_member,
    update_reward,
    validate_qr,
    validate_redemption_code,
)
from .models import EventCheckIn, LoyaltyMember, LoyaltyReward, RewardRedemption, Tenant
from .schemas import (
    CheckInCreate,
    CheckInOut,
    EventCheckInOut,
    MemberEnroll,
    MemberOut,
    MemberUpdate,
    PointsAdjust,
    PointTransactionOut,
    QrCreate,
    QrOut,
    QrScan,
    RedeemCreate,
    RedemptionCodeCheck,
    RedemptionOut,
    RewardCreate,
    RewardInventorySet,
    RewardOut,
    RewardUpdate,
    TierOut,
)

router = APIRouter(prefix="/api/loyalty")
public_router = APIRouter(prefix="/public/loyalty")


def _to_member_out(m: LoyaltyMember) -> MemberOut:
    return MemberOut(
        id=m.id,
        customer_id=m.customer_id,
        customer_name=m.customer.full_name if m.customer else None,
        tier_id=m.tier_id,
        tier_name=m.tier.name if m.tier else None,
        status=m.status,
        join_date=m.join_date,
        available_points=m.available_points,
        total_points=m.total_points,
        lifetime_points=m.lifetime_points,
        lifetime_events=m.lifetime_events,
        last_activity_date=m.last_activity_date,
    )


def _to_reward_out(r: LoyaltyReward) -> RewardOut:
    return RewardOut(
        id=r.id,
        name=r.name,
        description=r.description,
        points_cost=r.points_cost,
        category=r.category,
        tier_required_id=r.tier_required_id,
        inventory=r.inventory,
        active=bool(r.active),
    )


def _to_redemption_out(r: RewardRedemption) -> RedemptionOut:
    return RedemptionOut(
        id=r.id,
        member_id=r.member_id,
        reward_id=r.reward_id,
        reward_name=r.reward.name if r.reward else None,
        redemption_code=r.redemption_code,
        points_spent=r.points_spent,
        status=r.status,
        generated_at=r.generated_at,
        expires_at=r.expires_at,
        fulfilled_at=r.fulfilled_at,
        fulfilled_by=r.fulfilled_by,
    )


def _to_check_in_out(c: EventCheckIn) -> EventCheckInOut:
    return EventCheckInOut(
        id=c.id,
        event_id=c.event_id,
        customer_id=c.customer_id,
        customer_name=c.customer.full_name if c.customer else None,
        member_id=c.member_id,
        booking_id=c.booking_id,
        check_in_method=c.check_in_method,
        points_earned=c.points_earned or 0,
        staff_email=c.staff_email,
        check_in_time=c.check_in_time,
    )


@router.get("/tiers", response_model=List[TierOut])
def tiers(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    return [
        TierOut(
            id=t.id,
            name=t.name,
            level=t.level,
            min_events=t.min_events,
            point_multiplier=float(t.point_multiplier),
            color=t.color,
        )
        for t in list_tiers(db, tenant.id)
    ]


@router.get("/stats")
def stats(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    return get_loyalty_stats(db, tenant.id)


@router.get("/members", response_model=List[MemberOut])
def members_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    return [_to_member_out(m) for m in list_members(db, tenant.id, status=status_filter, limit=limit)]


@router.post("/members", response_model=MemberOut, status_code=status.HTTP_201_CREATED)
def enroll(
    payload: MemberEnroll,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        m = enroll_member(
            db,
            tenant.id,
            customer_id=payload.customer_id,
            status=payload.status,
            join_date=payload.join_date,
            actor_email=actor.email,
        )
    return _to_member_out(m)


@router.get("/members/{member_id}", response_model=MemberOut)
def member_detail(
    member_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    with service_errors():
        m = get_member(db, tenant.id, member_id)
    return _to_member_out(m)


@router.patch("/members/{member_id}", response_model=MemberOut)
def patch_member(
    member_id: int,
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        m = update_member(
            db,
            tenant.id,
            member_id,
            status=payload.status,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_member_out(m)


@router.post("/members/{member_id}/points", response_model=MemberOut)
def points_adjustment(
    member_id: int,
    payload: PointsAdjust,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        m = adjust_points(
            db,
            tenant.id,
            member_id,
            points=payload.points,
            description=payload.description,
            transaction_type=payload.transaction_type,
            actor_email=actor.email,
        )
    return _to_member_out(m)


@router.get("/members/{member_id}/transactions", response_model=List[PointTransactionOut])
def member_transactions(
    member_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    with service_errors():
        rows = list_member_transactions(db, tenant.id, member_id, limit=limit)
    return [
        PointTransactionOut(
            id=t.id,
            points=t.points,
            balance_after=t.balance_after,
            transaction_type=t.transaction_type,
            description=t.description,
            created_by=t.created_by,
            created_at=t.created_at,
        )
        for t in rows
    ]


@router.get("/members/{member_id}/redemptions", response_model=List[RedemptionOut])
def member_redemptions(
    member_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    with service_errors():
        rows = list_member_redemptions(db, tenant.id, member_id, limit=limit)
    return [_to_redemption_out(r) for r in rows]


@router.post("/check-ins", response_model=CheckInOut)
def staff_check_in(
    payload: CheckInCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "redeem")),
):
    with service_errors():
        result = check_in(
            db,
            tenant.id,
            event_id=payload.event_id,
            customer_id=payload.customer_id,
            method=payload.method,
            booking_id=payload.booking_id,
            actor_email=actor.email,
        )
    return CheckInOut(**result)


@router.post("/qr", response_model=QrOut)
def event_qr(
    payload: QrCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        result = generate_event_qr(db, tenant.id, event_id=payload.event_id, booking_id=payload.booking_id)
    return QrOut(**result)


@router.get("/events/{event_id}/check-ins", response_model=List[EventCheckInOut])
def event_check_ins(
    event_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "view")),
):
    with service_errors():
        rows = list_event_check_ins(db, tenant.id, event_id)
    return [_to_check_in_out(c) for c in rows]


@router.get("/events/{event_id}/check-ins/stats")
def event_check_in_stats(
    event_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "view")),
):
    with service_errors():
        return get_event_check_in_stats(db, tenant.id, event_id)


# Rewards


@router.get("/rewards", response_model=List[RewardOut])
def rewards_index(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    return [_to_reward_out(r) for r in list_rewards(db, tenant.id, include_inactive=include_inactive)]


@router.post("/rewards", response_model=RewardOut, status_code=status.HTTP_201_CREATED)
def add_reward(
    payload: RewardCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        r = create_reward(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_reward_out(r)


@router.patch("/rewards/{reward_id}", response_model=RewardOut)
def patch_reward(
    reward_id: int,
    payload: RewardUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        r = update_reward(db, tenant.id, reward_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_reward_out(r)


@router.put("/rewards/{reward_id}/inventory", response_model=RewardOut)
def put_reward_inventory(
    reward_id: int,
    payload: RewardInventorySet,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        r = set_reward_inventory(db, tenant.id, reward_id, payload.inventory, actor_email=actor.email)
    return _to_reward_out(r)


@router.delete("/rewards/{reward_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_reward(
    reward_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        delete_reward(db, tenant.id, reward_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Redemptions


@router.post("/redemptions", response_model=RedemptionOut, status_code=status.HTTP_201_CREATED)
def redeem(
    payload: RedeemCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "redeem")),
):
    with service_errors():
        r = redeem_reward(
            db,
            tenant.id,
            member_id=payload.member_id,
            reward_id=payload.reward_id,
            actor_email=actor.email,
        )
    return _to_redemption_out(r)


@router.get("/redemptions/pending", response_model=List[RedemptionOut])
def pending_redemptions(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "view")),
):
    return [_to_redemption_out(r) for r in list_pending_redemptions(db, tenant.id, limit=limit)]


@router.post("/redemptions/validate", response_model=RedemptionOut)
def check_redemption_code(
    payload: RedemptionCodeCheck,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "redeem")),
):
    with service_errors():
        r = validate_redemption_code(db, tenant.id, payload.code)
    return _to_redemption_out(r)


@router.post("/redemptions/{redemption_id}/process", response_model=RedemptionOut)
def fulfil_redemption(
    redemption_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "redeem")),
):
    with service_errors():
        r = process_redemption(db, tenant.id, redemption_id, actor_email=actor.email)
    return _to_redemption_out(r)


@router.post("/redemptions/{redemption_id}/cancel", response_model=RedemptionOut)
def cancel_pending_redemption(
    redemption_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("loyalty", "manage")),
):
    with service_errors():
        r = cancel_redemption(db, tenant.id, redemption_id, actor_email=actor.email)
    return _to_redemption_out(r)


# Guest-facing QR scan


@public_router.post("/qr/validate")
def public_validate_qr(
    payload: QrScan,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    with service_errors():
        return validate_qr(db, tenant.id, payload.qr_data)


@public_router.post("/qr/check-in", response_model=CheckInOut)
def public_self_check_in(
    payload: QrScan,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    with service_errors():
        result = self_check_in(db, tenant.id, payload.qr_data)
    return CheckInOut(**result)
