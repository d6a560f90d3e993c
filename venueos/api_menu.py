from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .menu import (
    create_ingredient,
    delete_ingredient,
    get_ingredient,
    ingredient_allergens,
    ingredient_dietary_flags,
    list_ingredient_prices,
    list_ingredients,
    parse_ingredient_text,
    record_ingredient_price,
    update_ingredient,
)
from .models import MenuIngredient, MenuIngredientPrice, Tenant
from .schemas import (
    AiUsageOut,
    IngredientCreate,
    IngredientOut,
    IngredientParseIn,
    IngredientParseOut,
    IngredientPriceCreate,
    IngredientPriceOut,
    IngredientUpdate,
)

router = APIRouter(prefix="/api/menu")


def _float_or_none(value):
    return float(value) if value is not None else None


def _to_ingredient_out(i: MenuIngredient) -> IngredientOut:
    return IngredientOut(
        id=i.id,
        name=i.name,
        description=i.description,
        default_unit=i.default_unit,
        storage_type=i.storage_type,
        supplier_name=i.supplier_name,
        supplier_sku=i.supplier_sku,
        brand=i.brand,
        pack_size=_float_or_none(i.pack_size),
        pack_size_unit=i.pack_size_unit,
        pack_cost=_float_or_none(i.pack_cost),
        portions_per_pack=_float_or_none(i.portions_per_pack),
        wastage_pct=float(i.wastage_pct or 0),
        shelf_life_days=i.shelf_life_days,
        allergens=ingredient_allergens(i),
        dietary_flags=ingredient_dietary_flags(i),
        notes=i.notes,
        is_active=bool(i.is_active),
    )


def _to_price_out(p: MenuIngredientPrice) -> IngredientPriceOut:
    return IngredientPriceOut(
        id=p.id,
        ingredient_id=p.ingredient_id,
        pack_cost=float(p.pack_cost),
        effective_date=p.effective_date,
        supplier_name=p.supplier_name,
        supplier_sku=p.supplier_sku,
        notes=p.notes,
    )


@router.get("/ingredients", response_model=List[IngredientOut])
def ingredients_index(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "view")),
):
    return [_to_ingredient_out(i) for i in list_ingredients(db, tenant.id, include_inactive=include_inactive)]


@router.post("/ingredients", response_model=IngredientOut, status_code=status.HTTP_201_CREATED)
def add_ingredient(
    payload: IngredientCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "manage")),
):
    with service_errors():
        i = create_ingredient(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_ingredient_out(i)


@router.get("/ingredients/{ingredient_id}", response_model=IngredientOut)
def ingredient_detail(
    ingredient_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "view")),
):
    with service_errors():
        i = get_ingredient(db, tenant.id, ingredient_id)
    return _to_ingredient_out(i)


@router.patch("/ingredients/{ingredient_id}", response_model=IngredientOut)
def patch_ingredient(
    ingredient_id: int,
    payload: IngredientUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "manage")),
):
    with service_errors():
        i = update_ingredient(db, tenant.id, ingredient_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_ingredient_out(i)


@router.delete("/ingredients/{ingredient_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_ingredient(
    ingredient_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "manage")),
):
    with service_errors():
        delete_ingredient(db, tenant.id, ingredient_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/ingredients/{ingredient_id}/prices", response_model=List[IngredientPriceOut])
def ingredient_prices(
    ingredient_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "view")),
):
    with service_errors():
        rows = list_ingredient_prices(db, tenant.id, ingredient_id)
    return [_to_price_out(p) for p in rows]


@router.post("/ingredients/{ingredient_id}/prices", response_model=IngredientPriceOut, status_code=status.HTTP_201_CREATED)
def add_ingredient_price(
    ingredient_id: int,
    payload: IngredientPriceCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("menu", "manage")),
):
    with service_errors():
        p = record_ingredient_price(
            db,
            tenant.id,
            ingredient_id,
            pack_cost=payload.pack_cost,
            effective_date=payload.effective_date,
            supplier_name=payload.supplier_name,
            supplier_sku=payload.supplier_sku,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_price_out(p)


@router.post("/ingredients/parse", response_model=IngredientParseOut)
def parse_ingredient(
    payload: IngredientParseIn,
    actor: Actor = Depends(require("menu", "manage")),
):
    with service_errors():
        result = parse_ingredient_text(payload.raw_text)
    return IngredientParseOut(ingredient=result["ingredient"], usage=AiUsageOut(**result["usage"]))
