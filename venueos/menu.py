import json
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .core.invoice_math import money, to_decimal
from .core.openai_client import chat_json
from .core.validation import clean_text
from .enterprise import safe_audit
from .errors import NotFoundError
from .models import MenuIngredient, MenuIngredientPrice, utc_now_naive

logger = structlog.get_logger("venueos.menu")

UNITS = ("each", "portion", "gram", "kilogram", "millilitre", "litre", "ounce", "pound")
STORAGE_TYPES = ("ambient", "chilled", "frozen", "dry", "other")

_TEXT_FIELDS = {
    "name": 200,
    "description": 1000,
    "supplier_name": 200,
    "supplier_sku": 80,
    "brand": 120,
    "pack_size_unit": 20,
    "notes": 1000,
}

INGREDIENT_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "default_unit": {"type": "string", "enum": list(UNITS)},
        "storage_type": {"type": ["string", "null"], "enum": [*STORAGE_TYPES, None]},
        "supplier_name": {"type": ["string", "null"]},
        "supplier_sku": {"type": ["string", "null"]},
        "brand": {"type": ["string", "null"]},
        "pack_size": {"type": ["number", "null"]},
        "pack_size_unit": {"type": ["string", "null"]},
        "pack_cost": {"type": ["number", "null"]},
        "portions_per_pack": {"type": ["number", "null"]},
        "wastage_pct": {"type": ["number", "null"]},
        "shelf_life_days": {"type": ["integer", "null"]},
        "allergens": {"type": "array", "items": {"type": "string"}},
        "dietary_flags": {"type": "array", "items": {"type": "string"}},
        "notes": {"type": ["string", "null"]},
    },
    "required": [
        "name",
        "description",
        "default_unit",
        "storage_type",
        "supplier_name",
        "supplier_sku",
        "brand",
        "pack_size",
        "pack_size_unit",
        "pack_cost",
        "portions_per_pack",
        "wastage_pct",
        "shelf_life_days",
        "allergens",
        "dietary_flags",
        "notes",
    ],
}

SYSTEM_PROMPT = (
    "You extract structured ingredient data for a pub kitchen from supplier text "
    "(invoices, product pages, spec sheets). Use UK units. Only fill values that are "
    "stated or can be derived directly; otherwise return null. Allergens use the UK "
    "14 allergen names in lower case."
)


def ingredient_allergens(row: MenuIngredient) -> list[str]:
    return json.loads(row.allergens_json or "[]")


def ingredient_dietary_flags(row: MenuIngredient) -> list[str]:
    return json.loads(row.dietary_flags_json or "[]")


def _clean_list(values) -> list[str]:
    out: list[str] = []
    for value in values or []:
        item = clean_text(str(value), 60)
        if item and item.lower() not in out:
            out.append(item.lower())
    return out


def _positive_or_none(value, field: str):
    if value is None or value == "":
        return None
    number = to_decimal(value)
    if number < 0:
        raise ValueError(f"{field} cannot be negative")
    return number


def _apply_fields(row: MenuIngredient, data: dict) -> None:
    for field, limit in _TEXT_FIELDS.items():
        if field in data:
            setattr(row, field, clean_text(data[field], limit))
    if "default_unit" in data and data["default_unit"] is not None:
        unit = str(data["default_unit"]).strip().lower()
        if unit not in UNITS:
            raise ValueError("Invalid unit")
        row.default_unit = unit
    if "storage_type" in data:
        storage = (str(data["storage_type"]).strip().lower() or None) if data["storage_type"] else None
        if storage is not None and storage not in STORAGE_TYPES:
            raise ValueError("Invalid storage type")
        row.storage_type = storage
    if "pack_size" in data:
        row.pack_size = _positive_or_none(data["pack_size"], "Pack size")
    if "pack_cost" in data:
        cost = _positive_or_none(data["pack_cost"], "Pack cost")
        row.pack_cost = money(cost) if cost is not None else None
    if "portions_per_pack" in data:
        row.portions_per_pack = _positive_or_none(data["portions_per_pack"], "Portions per pack")
    if "wastage_pct" in data and data["wastage_pct"] is not None:
        wastage = to_decimal(data["wastage_pct"])
        if wastage < 0 or wastage > 100:
            raise ValueError("Wastage must be between 0 and 100")
        row.wastage_pct = wastage
    if "shelf_life_days" in data:
        days = data["shelf_life_days"]
        if days is not None and int(days) < 0:
            raise ValueError("Shelf life cannot be negative")
        row.shelf_life_days = int(days) if days is not None else None
    if "allergens" in data:
        row.allergens_json = json.dumps(_clean_list(data["allergens"]))
    if "dietary_flags" in data:
        row.dietary_flags_json = json.dumps(_clean_list(data["dietary_flags"]))
    if "is_active" in data and data["is_active"] is not None:
        row.is_active = bool(data["is_active"])


def _ensure_unique_name(db: Session, tenant_id: int, name: str, exclude_id: int | None = None) -> None:
    q = select(MenuIngredient.id).where(MenuIngredient.tenant_id == tenant_id, MenuIngredient.name == name)
    if exclude_id is not None:
        q = q.where(MenuIngredient.id != exclude_id)
    if db.execute(q).first():
        raise ValueError("An ingredient with this name already exists")


def get_ingredient(db: Session, tenant_id: int, ingredient_id: int) -> MenuIngredient:
    row = db.execute(
        select(MenuIngredient).where(MenuIngredient.tenant_id == tenant_id, MenuIngredient.id == ingredient_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Ingredient not found")
    return row


def list_ingredients(db: Session, tenant_id: int, include_inactive: bool = False) -> list[MenuIngredient]:
    q = db.query(MenuIngredient).filter(MenuIngredient.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(MenuIngredient.is_active.is_(True))
    return q.order_by(MenuIngredient.name.asc()).all()


def create_ingredient(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> MenuIngredient:
    name = clean_text(data.get("name"), 200)
    if not name:
        raise ValueError("Ingredient name is required")
    _ensure_unique_name(db, tenant_id, name)
    now = utc_now_naive()
    row = MenuIngredient(
        tenant_id=tenant_id,
        default_unit="each",
        wastage_pct=0,
        allergens_json="[]",
        dietary_flags_json="[]",
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    _apply_fields(row, {**data, "name": name})
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("ingredient_created", ingredient_id=row.id)
    safe_audit(db, tenant_id, "create", "menu_ingredient", row.id, actor_email=actor_email, payload={"name": row.name})
    return row


def update_ingredient(
    db: Session,
    tenant_id: int,
    ingredient_id: int,
    changes: dict,
    actor_email: str | None = None,
) -> MenuIngredient:
    row = get_ingredient(db, tenant_id, ingredient_id)
    if "name" in changes:
        name = clean_text(changes["name"], 200)
        if not name:
            raise ValueError("Ingredient name is required")
        _ensure_unique_name(db, tenant_id, name, exclude_id=row.id)
        changes = {**changes, "name": name}
    _apply_fields(row, changes)
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "menu_ingredient", row.id, actor_email=actor_email, payload={"fields": sorted(changes)})
    return row


def delete_ingredient(db: Session, tenant_id: int, ingredient_id: int, actor_email: str | None = None) -> None:
    row = get_ingredient(db, tenant_id, ingredient_id)
    db.query(MenuIngredientPrice).filter(MenuIngredientPrice.ingredient_id == row.id).delete(synchronize_session=False)
    db.delete(row)
    db.commit()
    logger.info("ingredient_deleted", ingredient_id=ingredient_id)
    safe_audit(db, tenant_id, "delete", "menu_ingredient", ingredient_id, actor_email=actor_email)


def record_ingredient_price(
    db: Session,
    tenant_id: int,
    ingredient_id: int,
    *,
    pack_cost,
    effective_date: date | None = None,
    supplier_name: str | None = None,
    supplier_sku: str | None = None,
    notes: str | None = None,
    actor_email: str | None = None,
) -> MenuIngredientPrice:
    row = get_ingredient(db, tenant_id, ingredient_id)
    cost = money(pack_cost)
    if cost < 0:
        raise ValueError("Pack cost cannot be negative")
    price = MenuIngredientPrice(
        tenant_id=tenant_id,
        ingredient_id=row.id,
        pack_cost=cost,
        effective_date=effective_date or utc_now_naive().date(),
        supplier_name=clean_text(supplier_name, 200),
        supplier_sku=clean_text(supplier_sku, 80),
        notes=clean_text(notes, 500),
    )
    db.add(price)
    row.pack_cost = cost
    if price.supplier_name:
        row.supplier_name = price.supplier_name
    if price.supplier_sku:
        row.supplier_sku = price.supplier_sku
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(price)
    safe_audit(
        db,
        tenant_id,
        "record_price",
        "menu_ingredient",
        row.id,
        actor_email=actor_email,
        payload={"pack_cost": str(cost)},
    )
    return price


def list_ingredient_prices(db: Session, tenant_id: int, ingredient_id: int) -> list[MenuIngredientPrice]:
    get_ingredient(db, tenant_id, ingredient_id)
    return (
        db.query(MenuIngredientPrice)
        .filter(MenuIngredientPrice.tenant_id == tenant_id, MenuIngredientPrice.ingredient_id == ingredient_id)
        .order_by(MenuIngredientPrice.effective_date.desc(), MenuIngredientPrice.id.desc())
        .all()
    )


def _number(value, *, low: float | None = None, high: float | None = None) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if low is not None and number < low:
        number = low
    if high is not None and number > high:
        number = high
    return number


def normalize_parsed_ingredient(raw: dict) -> dict:
    """Coerce a model response onto the ingredient fields."""
    unit = str(raw.get("default_unit") or "").strip().lower()
    storage = str(raw.get("storage_type") or "").strip().lower()
    shelf_life = _number(raw.get("shelf_life_days"), low=0)
    out = {field: clean_text(raw.get(field) if isinstance(raw.get(field), str) else None, limit) for field, limit in _TEXT_FIELDS.items()}
    out.update(
        {
            "default_unit": unit if unit in UNITS else "each",
            "storage_type": storage if storage in STORAGE_TYPES else None,
            "pack_size": _number(raw.get("pack_size"), low=0),
            "pack_cost": _number(raw.get("pack_cost"), low=0),
            "portions_per_pack": _number(raw.get("portions_per_pack"), low=0),
            "wastage_pct": _number(raw.get("wastage_pct"), low=0, high=100) or 0.0,
            "shelf_life_days": int(shelf_life) if shelf_life is not None else None,
            "allergens": _clean_list(raw.get("allergens") if isinstance(raw.get("allergens"), list) else []),
            "dietary_flags": _clean_list(raw.get("dietary_flags") if isinstance(raw.get("dietary_flags"), list) else []),
        }
    )
    return out


def parse_ingredient_text(raw_text: str) -> dict:
    text = clean_text(raw_text, 6000)
    if not text:
        raise ValueError("Text to parse is required")
    parsed, usage = chat_json(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=text,
        schema_name="ingredient",
        schema=INGREDIENT_SCHEMA,
    )
    ingredient = normalize_parsed_ingredient(parsed if isinstance(parsed, dict) else {})
    logger.info("ingredient_parsed", name=ingredient.get("name"), total_tokens=usage["total_tokens"])
    return {"ingredient": ingredient, "usage": usage}
