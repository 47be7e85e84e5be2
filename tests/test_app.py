import base64
from io import BytesIO
from pathlib import Path
from typing import Optional

import httpx

from storeflow import create_app
from storeflow.config import Settings
from storeflow.imaging import ImageEditor
from storeflow.inventory import Product
from storeflow.spreadsheet import export_products, load_products

EDITED = b"\x89PNG\r\n\x1a\nedited"


def _settings(tmp_path: Path, sync_root: Optional[Path] = None) -> Settings:
    return Settings(
        environment="test",
        secret_key="test-secret",
        data_path=tmp_path / "storeflow.json",
        sync_root=sync_root,
        allowed_email_domain="@cavitak.com",
        verification_code="123456",
        resend_cooldown_seconds=30,
        image_api_key="test-key",
    )


def _app(tmp_path: Path, sync_root: Optional[Path] = None, image_editor=None):
    settings = _settings(tmp_path, sync_root=sync_root)
    app = create_app(tmp_path / "storeflow.json", settings=settings, image_editor=image_editor)
    app.config.update(TESTING=True)
    return app


def _login(client, email: str = "ops@cavitak.com") -> None:
    response = client.post("/api/auth/request-code", json={"email": email})
    assert response.status_code == 200
    response = client.post("/api/auth/verify", json={"email": email, "code": "123456"})
    assert response.status_code == 200


def _add(client, **fields) -> dict:
    response = client.post("/api/products", json=fields)
    assert response.status_code == 201
    return response.get_json()


def test_endpoints_require_login(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()

    for method, path in [
        ("get", "/api/products"),
        ("post", "/api/transactions"),
        ("get", "/api/dashboard"),
        ("post", "/api/sync/save"),
    ]:
        response = getattr(client, method)(path)
        assert response.status_code == 401
        assert response.get_json() == {"error": "Authentication required"}


def test_login_flow(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()

    response = client.post("/api/auth/request-code", json={"email": "me@gmail.com"})
    assert response.status_code == 400
    assert "Only @cavitak.com" in response.get_json()["error"]

    response = client.post("/api/auth/request-code", json={"email": "ops@cavitak.com"})
    assert response.get_json() == {"status": "sent", "cooldown": 30}

    response = client.post("/api/auth/request-code", json={"email": "ops@cavitak.com"})
    assert response.status_code == 429
    assert response.get_json()["retry_after"] > 0

    response = client.post("/api/auth/verify", json={"email": "ops@cavitak.com", "code": "999999"})
    assert response.status_code == 400

    response = client.post("/api/auth/verify", json={"email": "ops@cavitak.com", "code": "123456"})
    assert response.get_json() == {"user": "ops@cavitak.com"}
    assert client.get("/api/session").get_json() == {
        "user": "ops@cavitak.com",
        "remembered_user": "ops@cavitak.com",
    }
    assert client.get("/api/products").status_code == 200

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/session").get_json() == {"user": None, "remembered_user": None}
    assert client.get("/api/products").status_code == 401


def test_product_crud(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()
    _login(client)

    assert client.post("/api/products", json={"name": "  "}).status_code == 400

    chair = _add(client, name="Office Chair", sku="FUR-1", category="Furniture", price=89.5, quantity=4)
    assert chair["lowStock"] is True
    assert chair["minLevel"] == 5
    lamp = _add(client, name="Desk Lamp", quantity="abc")
    assert lamp["quantity"] == 0
    assert lamp["category"] == "General"
    assert lamp["sku"].startswith("SKU-")

    listed = client.get("/api/products").get_json()
    assert [p["name"] for p in listed] == ["Office Chair", "Desk Lamp"]
    found = client.get("/api/products?q=fur").get_json()
    assert [p["id"] for p in found] == [chair["id"]]

    response = client.put(f"/api/products/{lamp['id']}", json={"quantity": 30, "imageUrl": "https://img/lamp.png"})
    assert response.status_code == 200
    assert response.get_json()["quantity"] == 30
    assert response.get_json()["imageUrl"] == "https://img/lamp.png"
    assert client.get(f"/api/products/{lamp['id']}").get_json()["lowStock"] is False

    assert client.put("/api/products/missing", json={"name": "X"}).status_code == 404
    assert client.get("/api/products/missing").status_code == 404

    assert client.delete(f"/api/products/{chair['id']}").status_code == 204
    assert [p["name"] for p in client.get("/api/products").get_json()] == ["Desk Lamp"]

    assert client.post("/api/products/clear", json={}).status_code == 400
    assert client.post("/api/products/clear", json={"confirm": True}).status_code == 200
    assert client.get("/api/products").get_json() == []


def test_record_transactions(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()
    _login(client)
    product = _add(client, name="Paper", quantity=10, price=2)

    for bad in (0, -3, "abc", 1.5, None, True):
        response = client.post(
            "/api/transactions", json={"product_id": product["id"], "type": "IN", "quantity": bad}
        )
        assert response.status_code == 400
    response = client.post("/api/transactions", json={"type": "IN", "quantity": 1})
    assert response.status_code == 400
    response = client.post(
        "/api/transactions", json={"product_id": product["id"], "type": "LOAN", "quantity": 1}
    )
    assert response.status_code == 400
    assert client.get("/api/transactions").get_json() == []

    response = client.post(
        "/api/transactions",
        json={"product_id": product["id"], "type": "OUT", "quantity": "4", "notes": "Front desk"},
    )
    assert response.status_code == 201
    entry = response.get_json()
    assert entry["productName"] == "Paper"
    assert entry["quantity"] == 4
    assert entry["notes"] == "Front desk"

    client.post("/api/transactions", json={"productId": product["id"], "type": "IN", "quantity": 20})
    assert client.get(f"/api/products/{product['id']}").get_json()["quantity"] == 26

    history = client.get("/api/transactions").get_json()
    assert [item["type"] for item in history] == ["IN", "OUT"]
    assert len(client.get("/api/transactions?limit=1").get_json()) == 1
    assert client.get("/api/transactions?limit=x").status_code == 400

    dashboard = client.get("/api/dashboard").get_json()
    assert dashboard["total_stock"] == 26
    assert dashboard["recent_in"] == 20
    assert dashboard["recent_out"] == 4
    assert dashboard["low_stock"] == 0
    assert dashboard["low_stock_items"] == []


def test_export_and_import(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()
    _login(client)
    _add(client, name="Stapler", sku="ST-1", quantity=3, price=7)

    response = client.get("/api/products/export")
    assert response.status_code == 200
    assert "StoreFlow_Backup_" in response.headers["Content-Disposition"]
    assert response.data.startswith(b"PK")
    assert [p.name for p in load_products(response.data, "backup.xlsx")] == ["Stapler"]

    response = client.get("/api/products/export?format=xls")
    assert response.headers["Content-Disposition"].endswith(".xls")
    assert client.get("/api/products/export?format=pdf").status_code == 400

    upload = export_products([Product(id="7", name="Binder", quantity=11)], "xlsx")
    response = client.post(
        "/api/products/import",
        data={"file": (BytesIO(upload), "master.xlsx")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    assert response.get_json()["count"] == 1
    assert [p["name"] for p in client.get("/api/products").get_json()] == ["Binder"]

    response = client.post(
        "/api/products/import",
        data={"file": (BytesIO(b"PK\x03\x04broken"), "broken.xlsx")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert [p["name"] for p in client.get("/api/products").get_json()] == ["Binder"]


def test_import_preview_and_rows(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()
    _login(client)

    response = client.post(
        "/api/products/import/preview",
        json={"rows": [{"Name": "Tape", "Qty": "many"}]},
    )
    report = response.get_json()
    assert report["rows"] == 1
    assert report["clean_rows"] == 0
    assert {"row": 0, "field": "quantity", "reason": "invalid", "value": "many"} in report["substitutions"]
    assert client.get("/api/products").get_json() == []

    response = client.post("/api/products/import", json={"rows": [{"Name": "Tape", "Qty": 2}]})
    assert response.get_json()["count"] == 1
    assert client.post("/api/products/import", json={"rows": "nope"}).status_code == 400


def test_sync_falls_back_to_download(tmp_path: Path) -> None:
    client = _app(tmp_path).test_client()
    _login(client)

    assert client.get("/api/sync").get_json()["supported"] is False
    response = client.post("/api/sync/connect", json={"path": "inventory.xlsx"})
    assert response.status_code == 409
    assert response.get_json()["fallback"] == "upload"

    assert client.post("/api/sync/save").get_json()["mode"] == "noop"
    _add(client, name="Mouse")
    response = client.post("/api/sync/save")
    assert response.headers["X-Save-Mode"] == "download"
    assert "StoreFlow_Backup_" in response.headers["Content-Disposition"]


def test_sync_with_connected_file(tmp_path: Path) -> None:
    root = tmp_path / "sheets"
    root.mkdir()
    sheet = root / "master.xlsx"
    sheet.write_bytes(export_products([Product(id="1", name="Scanner", quantity=2)], "xlsx"))
    client = _app(tmp_path, sync_root=root).test_client()
    _login(client)

    assert client.post("/api/sync/connect", json={"path": "../elsewhere.xlsx"}).status_code == 400
    response = client.post("/api/sync/connect", json={"path": "master.xlsx"})
    assert response.status_code == 200
    status = response.get_json()
    assert status["connected"] is True
    assert status["can_save"] is False
    assert status["count"] == 1

    client.post("/api/transactions", json={"product_id": "1", "type": "IN", "quantity": 3})
    response = client.post("/api/sync/save")
    assert response.get_json()["mode"] == "file"
    assert load_products(sheet.read_bytes(), sheet.name)[0].quantity == 5

    assert client.post("/api/sync/load").get_json() == {"count": 1}
    client.post("/api/auth/logout")
    _login(client)
    assert client.get("/api/sync").get_json()["connected"] is False


def test_image_edit(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = {
            "candidates": [
                {"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": base64.b64encode(EDITED).decode()}}]}}
            ]
        }
        return httpx.Response(200, json=body)

    editor = ImageEditor("test-key", client=httpx.Client(transport=httpx.MockTransport(handler)))
    client = _app(tmp_path, image_editor=editor).test_client()
    _login(client)

    source = "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode()
    response = client.post("/api/images/edit", json={"image": source, "prompt": "Add a retro filter"})
    assert response.status_code == 200
    assert response.get_json()["image_url"] == "data:image/png;base64," + base64.b64encode(EDITED).decode()

    response = client.post(
        "/api/images/edit",
        data={"image": (BytesIO(b"raw"), "photo.png"), "prompt": "Brighter"},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200

    assert client.post("/api/images/edit", json={"image": "not-a-data-url", "prompt": "x"}).status_code == 400
    assert client.post("/api/images/edit", json={"image": source, "prompt": " "}).status_code == 400


def test_image_edit_failure_is_bad_gateway(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": {"0": "unexpected"}})

    editor = ImageEditor("test-key", client=httpx.Client(transport=httpx.MockTransport(handler)))
    client = _app(tmp_path, image_editor=editor).test_client()
    _login(client)

    source = "data:image/png;base64," + base64.b64encode(b"png").decode()
    response = client.post("/api/images/edit", json={"image": source, "prompt": "Remove background"})
    assert response.status_code == 502
    assert response.get_json() == {"error": "No image data found in the response."}
