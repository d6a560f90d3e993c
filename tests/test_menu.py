import json

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_menu import router as menu_router
from venueos.config import settings
from venueos.core.http import set_transport
from venueos.db import Base, get_db
from venueos.menu import normalize_parsed_ingredient

MANAGER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "boss@anchor.test", "X-Actor-Role": "manager"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(menu_router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _ingredient(client, name="Mature cheddar", **extra):
    res = client.post("/api/menu/ingredients", headers=MANAGER, json={"name": name, **extra})
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def openai_reply(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(settings, "OPENAI_BASE_URL", "https://openai.test/v1")
    monkeypatch.setattr(settings, "OPENAI_MENU_MODEL", "gpt-4o-mini")
    state = {"content": "{}", "requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": state["content"]}}],
                "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
            },
        )

    set_transport(httpx.MockTransport(handler))
    return state


def test_ingredient_crud_and_permissions(tmp_path):
    client = make_client(tmp_path)
    cheese = _ingredient(
        client,
        default_unit="Kilogram",
        storage_type="chilled",
        pack_size=5,
        pack_cost=32.5,
        allergens=["Milk", "milk", " Gluten "],
        dietary_flags=["vegetarian"],
    )
    assert cheese["default_unit"] == "kilogram"
    assert cheese["allergens"] == ["milk", "gluten"]
    assert cheese["pack_cost"] == 32.5

    dup = client.post("/api/menu/ingredients", headers=MANAGER, json={"name": "Mature cheddar"})
    assert dup.status_code == 400
    assert dup.json()["detail"] == "An ingredient with this name already exists"

    bad_unit = client.post("/api/menu/ingredients", headers=MANAGER, json={"name": "Salt", "default_unit": "bucket"})
    assert bad_unit.status_code == 400
    assert bad_unit.json()["detail"] == "Invalid unit"

    bad_storage = client.post("/api/menu/ingredients", headers=MANAGER, json={"name": "Salt", "storage_type": "shed"})
    assert bad_storage.json()["detail"] == "Invalid storage type"

    assert client.post("/api/menu/ingredients", headers=RECEPTION, json={"name": "Pepper"}).status_code == 403
    assert [i["name"] for i in client.get("/api/menu/ingredients", headers=RECEPTION).json()] == ["Mature cheddar"]

    retired = client.patch(f"/api/menu/ingredients/{cheese['id']}", headers=MANAGER, json={"is_active": False})
    assert retired.json()["is_active"] is False
    assert client.get("/api/menu/ingredients", headers=RECEPTION).json() == []
    assert len(client.get("/api/menu/ingredients", headers=RECEPTION, params={"include_inactive": True}).json()) == 1


def test_price_history_updates_current_cost(tmp_path):
    client = make_client(tmp_path)
    cheese = _ingredient(client, pack_cost=30)

    first = client.post(
        f"/api/menu/ingredients/{cheese['id']}/prices",
        headers=MANAGER,
        json={"pack_cost": 31.25, "effective_date": "2030-01-01", "supplier_name": "Brakes"},
    )
    assert first.status_code == 201
    client.post(
        f"/api/menu/ingredients/{cheese['id']}/prices",
        headers=MANAGER,
        json={"pack_cost": 33, "effective_date": "2030-02-01"},
    )

    history = client.get(f"/api/menu/ingredients/{cheese['id']}/prices", headers=RECEPTION).json()
    assert [(p["effective_date"], p["pack_cost"]) for p in history] == [("2030-02-01", 33.0), ("2030-01-01", 31.25)]

    current = client.get(f"/api/menu/ingredients/{cheese['id']}", headers=RECEPTION).json()
    assert current["pack_cost"] == 33.0
    assert current["supplier_name"] == "Brakes"

    assert client.delete(f"/api/menu/ingredients/{cheese['id']}", headers=MANAGER).status_code == 204
    assert client.get(f"/api/menu/ingredients/{cheese['id']}/prices", headers=RECEPTION).status_code == 404


def test_parse_requires_openai_key(tmp_path):
    client = make_client(tmp_path)
    res = client.post("/api/menu/ingredients/parse", headers=MANAGER, json={"raw_text": "Cheddar 5kg"})
    assert res.status_code == 400
    assert res.json()["detail"] == "OpenAI is not configured"


def test_parse_normalizes_model_output(tmp_path, openai_reply):
    openai_reply["content"] = json.dumps(
        {
            "name": "Cathedral City Mature Cheddar",
            "description": None,
            "default_unit": "Kilogram",
            "storage_type": "freezer",
            "supplier_name": "Brakes",
            "supplier_sku": "BR-1001",
            "brand": "Cathedral City",
            "pack_size": 5,
            "pack_size_unit": "kg",
            "pack_cost": "32.50",
            "portions_per_pack": 100,
            "wastage_pct": 150,
            "shelf_life_days": 60,
            "allergens": ["Milk"],
            "dietary_flags": ["Vegetarian"],
            "notes": None,
        }
    )
    client = make_client(tmp_path)

    res = client.post("/api/menu/ingredients/parse", headers=MANAGER, json={"raw_text": "Cathedral City 5kg block"})
    assert res.status_code == 200, res.text
    body = res.json()
    ingredient = body["ingredient"]
    assert ingredient["default_unit"] == "kilogram"
    assert ingredient["storage_type"] is None
    assert ingredient["pack_cost"] == 32.5
    assert ingredient["wastage_pct"] == 100.0
    assert ingredient["allergens"] == ["milk"]
    assert body["usage"]["total_tokens"] == 1500
    assert body["usage"]["cost"] == pytest.approx(0.00045)

    sent = openai_reply["requests"][0]
    assert str(sent.url) == "https://openai.test/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer sk-test"
    request_body = json.loads(sent.content)
    assert request_body["model"] == "gpt-4o-mini"
    assert request_body["response_format"]["json_schema"]["name"] == "ingredient"
    assert request_body["messages"][1]["content"] == "Cathedral City 5kg block"

    # parsed output is a draft; nothing is stored until it is posted back
    assert client.get("/api/menu/ingredients", headers=MANAGER).json() == []
    saved = client.post("/api/menu/ingredients", headers=MANAGER, json=ingredient)
    assert saved.status_code == 201
    assert saved.json()["brand"] == "Cathedral City"


def test_parse_rejects_invalid_model_json(tmp_path, openai_reply):
    openai_reply["content"] = "not json"
    client = make_client(tmp_path)

    res = client.post("/api/menu/ingredients/parse", headers=MANAGER, json={"raw_text": "Milk 2L"})
    assert res.status_code == 502
    assert res.json()["detail"] == "OpenAI returned invalid JSON"


def test_normalize_parsed_ingredient_defaults():
    out = normalize_parsed_ingredient({"name": "  Eggs ", "default_unit": "dozen", "allergens": "egg", "shelf_life_days": -3})
    assert out["name"] == "Eggs"
    assert out["default_unit"] == "each"
    assert out["allergens"] == []
    assert out["shelf_life_days"] == 0
    assert out["wastage_pct"] == 0.0
    assert out["pack_cost"] is None
