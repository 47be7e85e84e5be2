"""Flask application exposing the StoreFlow inventory as a JSON API."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.utils import secure_filename

from .auth import LoginError, LoginManager
from .config import Settings, get_settings
from .imaging import ImageEditError, ImageEditor, parse_data_url, to_data_url
from .inventory import InventoryStore
from .logger import setup_logger
from .spreadsheet import (
    XLS_MIMETYPE,
    XLSX_MIMETYPE,
    SpreadsheetError,
    backup_filename,
    export_products,
    read_rows,
    validate_import,
)
from .storage import (
    FileAccessUnsupported,
    FileSyncError,
    LocalStore,
    SpreadsheetSync,
    StorageError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)


def create_app(
    storage_path: Union[str, Path, None] = None,
    *,
    settings: Optional[Settings] = None,
    image_editor: Optional[ImageEditor] = None,
) -> Flask:
    settings = settings or get_settings()
    setup_logger(log_level=settings.log_level, log_dir=settings.log_dir)
    storage_path = Path(storage_path) if storage_path is not None else settings.data_path

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["STOREFLOW_SETTINGS"] = settings
    app.permanent_session_lifetime = timedelta(days=settings.session_days)

    local_store = LocalStore(storage_path)
    store = InventoryStore(local_store)
    sync = SpreadsheetSync(store, sync_root=settings.sync_root)
    login_manager = LoginManager(
        local_store,
        allowed_domain=settings.allowed_email_domain,
        verification_code=settings.verification_code,
        resend_cooldown=settings.resend_cooldown_seconds,
    )
    editor = image_editor or ImageEditor(
        settings.image_api_key,
        model=settings.image_model,
        base_url=settings.image_api_base,
        timeout=settings.image_timeout,
    )
    app.extensions["storeflow"] = {
        "local_store": local_store,
        "store": store,
        "sync": sync,
        "login_manager": login_manager,
        "image_editor": editor,
    }

    def _json_error(message: str, status: int, **extra: Any) -> Any:
        payload: Dict[str, Any] = {"error": message}
        payload.update(extra)
        return jsonify(payload), status

    def _current_username() -> Optional[str]:
        return getattr(g, "current_user", None)

    @app.before_request
    def load_current_user() -> None:
        g.current_user = session.get("user")

    @app.errorhandler(StorageError)
    def handle_storage_error(exc: StorageError) -> Any:
        return _json_error(str(exc), 500)

    def login_required(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if _current_username() is None:
                return _json_error("Authentication required", 401)
            return func(*args, **kwargs)

        return wrapper

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------
    @app.post("/api/auth/request-code")
    def request_code() -> Any:
        payload = _get_payload(request)
        try:
            cooldown = login_manager.request_code(payload.get("email"))
        except LoginError as exc:
            if exc.retry_after is not None:
                return _json_error(str(exc), 429, retry_after=exc.retry_after)
            return _json_error(str(exc), 400)
        return jsonify({"status": "sent", "cooldown": cooldown})

    @app.post("/api/auth/verify")
    def verify_code() -> Any:
        payload = _get_payload(request)
        try:
            user = login_manager.verify(payload.get("email"), payload.get("code"))
        except LoginError as exc:
            return _json_error(str(exc), 400)
        session.clear()
        session["user"] = user
        session.permanent = True
        return jsonify({"user": user})

    @app.post("/api/auth/logout")
    def logout() -> Any:
        login_manager.logout()
        sync.disconnect()
        session.clear()
        return jsonify({"status": "signed_out"})

    @app.get("/api/session")
    def current_session() -> Any:
        return jsonify(
            {
                "user": _current_username(),
                "remembered_user": login_manager.current_user(),
            }
        )

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    @app.get("/api/products")
    @login_required
    def list_products() -> Any:
        term = request.args.get("q")
        limit = _parse_positive_int(request.args.get("limit"))
        if term:
            products = store.search_products(term, limit=limit)
        else:
            products = store.list_products()
            if limit is not None:
                products = products[:limit]
        return jsonify([product.to_dict() for product in products])

    @app.post("/api/products")
    @login_required
    def add_product() -> Any:
        payload = _get_payload(request)
        product = store.add_product(
            payload.get("name"),
            sku=payload.get("sku"),
            category=payload.get("category"),
            price=payload.get("price"),
            quantity=payload.get("quantity"),
            image_url=payload.get("imageUrl", payload.get("image_url")),
        )
        if product is None:
            return _json_error("Missing product name", 400)
        return jsonify(product.to_dict()), 201

    @app.get("/api/products/<string:product_id>")
    @login_required
    def get_product(product_id: str) -> Any:
        try:
            product = store.get_product(product_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        return jsonify(product.to_dict())

    @app.put("/api/products/<string:product_id>")
    @login_required
    def update_product(product_id: str) -> Any:
        payload = _get_payload(request)
        patch: Dict[str, Any] = {}
        for key in ("name", "category", "price", "quantity", "sku"):
            if key in payload:
                patch[key] = payload[key]
        for key in ("imageUrl", "image_url"):
            if key in payload:
                patch["image_url"] = payload[key]
        product = store.update_product(product_id, **patch)
        if product is None:
            return _json_error(f"Product '{product_id}' not found", 404)
        return jsonify(product.to_dict())

    @app.delete("/api/products/<string:product_id>")
    @login_required
    def delete_product(product_id: str) -> Any:
        store.delete_product(product_id)
        return "", 204

    @app.post("/api/products/clear")
    @login_required
    def clear_products() -> Any:
        payload = _get_payload(request)
        if payload.get("confirm") not in (True, "true", "1", 1):
            return _json_error("Clearing all products requires confirmation", 400)
        store.clear_all()
        logger.info("Product list cleared by %s", _current_username())
        return jsonify({"status": "cleared"})

    @app.get("/api/products/export")
    @login_required
    def export_inventory() -> Any:
        fmt = (request.args.get("format") or "xlsx").lower()
        if fmt not in {"xlsx", "xls"}:
            return _json_error("Unsupported export format", 400)
        content = export_products(store.list_products(), fmt)
        return _spreadsheet_response(content, backup_filename(fmt=fmt))

    @app.post("/api/products/import")
    @login_required
    def import_inventory() -> Any:
        try:
            upload = request.files.get("file")
            if upload is not None:
                if upload.filename == "":
                    return _json_error("Missing upload file", 400)
                imported = sync.import_upload(upload.read(), secure_filename(upload.filename))
            else:
                imported = sync.import_rows(_extract_json_rows(request))
        except SpreadsheetError as exc:
            logger.warning("Import failed: %s", exc)
            return _json_error(f"Failed to parse spreadsheet: {exc}", 400)
        except ValueError as exc:
            return _json_error(str(exc), 400)
        except SyncInProgressError as exc:
            return _json_error(str(exc), 409)
        logger.info("Imported %d products", len(imported))
        return jsonify({"count": len(imported), "products": [p.to_dict() for p in imported]})

    @app.post("/api/products/import/preview")
    @login_required
    def preview_import() -> Any:
        try:
            upload = request.files.get("file")
            if upload is not None:
                rows = read_rows(upload.read(), secure_filename(upload.filename or ""))
            else:
                rows = _extract_json_rows(request)
        except ValueError as exc:
            return _json_error(str(exc), 400)
        return jsonify(validate_import(rows).to_dict())

    # ------------------------------------------------------------------
    # Stock movements
    # ------------------------------------------------------------------
    @app.get("/api/transactions")
    @login_required
    def list_transactions() -> Any:
        limit_raw = request.args.get("limit")
        offset_raw = request.args.get("offset")
        limit = None
        if limit_raw not in (None, ""):
            limit = _parse_non_negative_int(limit_raw)
            if limit is None:
                return _json_error("Invalid limit", 400)
        offset = 0
        if offset_raw not in (None, ""):
            parsed_offset = _parse_non_negative_int(offset_raw)
            if parsed_offset is None:
                return _json_error("Invalid offset", 400)
            offset = parsed_offset
        entries = store.list_transactions(limit=limit, offset=offset)
        return jsonify([entry.to_dict() for entry in entries])

    @app.post("/api/transactions")
    @login_required
    def record_transaction() -> Any:
        payload = _get_payload(request)
        product_id = str(payload.get("product_id") or payload.get("productId") or "").strip()
        if not product_id:
            return _json_error("Missing product id", 400)
        quantity = _parse_positive_int(payload.get("quantity"))
        if quantity is None:
            return _json_error("Quantity must be a whole number greater than zero", 400)
        try:
            transaction = store.record_transaction(
                product_id,
                payload.get("type", ""),
                quantity,
                notes=str(payload.get("notes") or ""),
            )
        except ValueError as exc:
            return _json_error(str(exc), 400)
        return jsonify(transaction.to_dict()), 201

    @app.get("/api/dashboard")
    @login_required
    def dashboard() -> Any:
        summary = store.summary()
        summary["low_stock_items"] = [
            product.to_dict() for product in store.list_products() if product.low_stock
        ]
        return jsonify(summary)

    # ------------------------------------------------------------------
    # Spreadsheet sync
    # ------------------------------------------------------------------
    @app.get("/api/sync")
    @login_required
    def sync_status() -> Any:
        return jsonify(sync.status())

    @app.post("/api/sync/connect")
    @login_required
    def sync_connect() -> Any:
        payload = _get_payload(request)
        path = str(payload.get("path") or "").strip()
        if not path:
            return _json_error("Missing file path", 400)
        try:
            products = sync.connect(path)
        except FileAccessUnsupported as exc:
            return _json_error(str(exc), 409, fallback="upload")
        except (FileSyncError, SpreadsheetError) as exc:
            logger.warning("Connect failed: %s", exc)
            return _json_error(str(exc), 400)
        except SyncInProgressError as exc:
            return _json_error(str(exc), 409)
        status = sync.status()
        status["count"] = len(products)
        return jsonify(status)

    @app.post("/api/sync/save")
    @login_required
    def sync_save() -> Any:
        try:
            result = sync.save()
        except FileSyncError as exc:
            return _json_error(str(exc), 500)
        except SyncInProgressError as exc:
            return _json_error(str(exc), 409)
        if result.mode == "download" and result.content is not None:
            response = _spreadsheet_response(result.content, result.filename or backup_filename())
            response.headers["X-Save-Mode"] = "download"
            return response
        return jsonify({"mode": result.mode, "file_name": result.filename, "reason": result.reason})

    @app.post("/api/sync/load")
    @login_required
    def sync_load() -> Any:
        try:
            products = sync.load()
        except (FileSyncError, SpreadsheetError) as exc:
            return _json_error(str(exc), 400)
        except SyncInProgressError as exc:
            return _json_error(str(exc), 409)
        return jsonify({"count": len(products)})

    @app.post("/api/sync/disconnect")
    @login_required
    def sync_disconnect() -> Any:
        sync.disconnect()
        return jsonify(sync.status())

    # ------------------------------------------------------------------
    # Image studio
    # ------------------------------------------------------------------
    @app.post("/api/images/edit")
    @login_required
    def edit_image() -> Any:
        upload = request.files.get("image")
        try:
            if upload is not None:
                prompt = request.form.get("prompt", "")
                image = upload.read()
                mime_type = upload.mimetype or "image/png"
            else:
                payload = _get_payload(request)
                prompt = str(payload.get("prompt") or "")
                mime_type, image = parse_data_url(str(payload.get("image") or ""))
        except ImageEditError as exc:
            return _json_error(str(exc), 400)
        if not image or not prompt.strip():
            return _json_error("An image and an instruction are required", 400)
        try:
            edited = editor.edit_image(image, mime_type, prompt)
        except ImageEditError as exc:
            logger.warning("Image edit failed: %s", exc)
            return _json_error(str(exc), 502)
        return jsonify({"image_url": to_data_url(edited, "image/png")})

    return app


def _get_payload(req: Any) -> Dict[str, Any]:
    if req.is_json:
        payload = req.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}
    if req.form:
        return req.form.to_dict()
    payload = req.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _extract_json_rows(req: Any) -> List[Dict[str, Any]]:
    payload = req.get_json(silent=True)
    if isinstance(payload, dict):
        payload = payload.get("rows")
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    raise ValueError("Unsupported import payload")


def _parse_non_negative_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def _parse_positive_int(value: Any) -> Optional[int]:
    parsed = _parse_non_negative_int(value)
    if parsed is None or parsed == 0:
        return None
    return parsed


def _spreadsheet_response(content: bytes, filename: str) -> Response:
    mimetype = XLS_MIMETYPE if filename.endswith(".xls") else XLSX_MIMETYPE
    response = Response(content, mimetype=mimetype)
    response.headers["Content-Disposition"] = f"attachment; filename={filename}"
    return response
