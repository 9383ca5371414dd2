import atexit
import os
import shutil
import time
import uuid
from typing import Any, Dict, List, Optional

from flask import (
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    redirect,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from .backends import LocalStorageBackend
from .config import BYTES_PER_MB, max_upload_bytes, uploads_dir
from .errors import (
    AuthenticationRequired,
    NotFound,
    PasteHostError,
    ValidationError,
)
from .ingest import (
    MultipartUpload,
    RawUpload,
    UploadOptions,
    parse_bool,
    parse_json_upload,
)
from .logs import configure_file_logging, get_logger, sanitize_log_value
from .models import APIKey, is_text_content
from .pastes import paginate
from .ratelimit import key_subject
from .services import Services, build_services


lifecycle_logger = get_logger("lifecycle")


class AmbiguousAPIKeyError(ValidationError):
    """Raised when multiple API keys are provided in a single request."""


def services() -> Services:
    return current_app.extensions["pastehost"]


def _extract_api_key_from_request() -> Optional[str]:
    candidates: List[str] = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())

    query_key = request.args.get("api_key")
    if query_key:
        candidates.append(query_key.strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousAPIKeyError("Multiple API keys provided")
    return next(iter(unique)) if unique else None


def current_caller() -> Optional[APIKey]:
    """Resolve the request's API key once per request. ``None`` is anonymous."""

    if "caller" not in g:
        g.caller = services().keys.authenticate(_extract_api_key_from_request())
    return g.caller


def require_caller() -> APIKey:
    caller = current_caller()
    if caller is None:
        raise AuthenticationRequired("API authentication required.")
    return caller


def _has_credentials() -> bool:
    try:
        return _extract_api_key_from_request() is not None
    except AmbiguousAPIKeyError:
        return False


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON")
    return payload


def _int_arg(name: str, default: Optional[int]) -> Optional[int]:
    raw_value = request.args.get(name)
    if raw_value in (None, ""):
        return default
    try:
        return int(raw_value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _split_extension(raw_id: str) -> str:
    return raw_id.split(".", 1)[0]


def _success(data: Any, status: int = 200) -> Response:
    response = jsonify({"success": True, "data": data})
    response.status_code = status
    return response


def _query_options() -> UploadOptions:
    values = request.values
    return UploadOptions(
        extension=values.get("ext") or values.get("extension") or None,
        expires_in=values.get("expires") or values.get("expires_in") or None,
        private=parse_bool(values.get("private", False)),
        filename=values.get("filename") or None,
    )


def _upload_rate_limit() -> str:
    config = services().config
    return f"{int(config['rate_limit_requests'])} per {int(config['rate_limit_window_seconds'])} second"


def _download_rate_limit() -> str:
    config = services().config
    return f"{int(config['download_rate_limit_per_minute'])} per minute"


def _enforce_key_limit(caller: Optional[APIKey]) -> None:
    if caller is not None:
        services().limiter.allow(key_subject(caller.key))


def create_app(
    config: Optional[Dict[str, Any]] = None,
    service_container: Optional[Services] = None,
    *,
    start_background: bool = True,
) -> Flask:
    configure_file_logging()
    container = service_container or build_services(config)

    app = Flask(__name__)
    app.extensions["pastehost"] = container
    # Multipart framing adds overhead on top of the content itself.
    app.config["MAX_CONTENT_LENGTH"] = max_upload_bytes(container.config) + BYTES_PER_MB

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[],
        storage_uri=os.environ.get("PASTEHOST_RATE_LIMIT_STORAGE", "memory://"),
    )

    if start_background and container.config.get("cleanup_enabled", True):
        # Enforce retention once before serving traffic.
        container.cleanup.run_once()
        container.cleanup.start()
        atexit.register(lambda: container.shutdown(wait=False))

    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.errorhandler(PasteHostError)
    def handle_core_error(error: PasteHostError):
        if error.status_code >= 500:
            lifecycle_logger.error(
                "request_failed path=%s code=%s error=%s",
                sanitize_log_value(request.path),
                error.error_code,
                error,
            )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        message = "Rate limit exceeded" if error.code == 429 else error.name
        payload = {"success": False, "error": message, "code": error.name.lower().replace(" ", "_")}
        return jsonify(payload), error.code

    # Pastes

    @app.route("/p", methods=["POST"])
    @app.route("/p/", methods=["POST"])
    @limiter.limit(_upload_rate_limit, exempt_when=_has_credentials)
    def upload():
        caller = current_caller()
        _enforce_key_limit(caller)
        content_type = (request.mimetype or "").lower()

        if content_type == "multipart/form-data":
            file_storage = request.files.get("file")
            if file_storage is None:
                raise ValidationError("No file provided in multipart form")
            envelope = MultipartUpload(file_storage, dict(request.form))
            options = _query_options()
        elif content_type == "application/json":
            if not request.get_data(cache=True):
                raise ValidationError("Empty JSON body")
            envelope, options = parse_json_upload(request.get_json(silent=True))
        else:
            body = request.get_data()
            if not body:
                raise ValidationError("Empty content")
            envelope = RawUpload(body, request.headers.get("Content-Type"))
            options = _query_options()

        normalized = services().normalizer.normalize(envelope, options, caller)
        paste = services().pastes.create(normalized)
        return _success(
            paste.to_response(services().config["base_url"], include_delete_key=True), 201
        )

    @app.route("/p/list", methods=["GET"])
    def list_pastes():
        caller = require_caller()
        page = _int_arg("page", 1)
        limit = _int_arg("limit", None)
        items, total = services().pastes.list(caller, page, limit, request.args.get("sort"))
        base_url = services().config["base_url"]
        page, limit = paginate(
            page, limit, services().pastes.list_default_limit, services().pastes.list_max_limit
        )
        return _success(
            {
                "items": [item.to_response(base_url) for item in items],
                "total": total,
                "page": page,
                "limit": limit,
            }
        )

    @app.route("/p/<raw_id>", methods=["GET"])
    def view(raw_id: str):
        item_id = _split_extension(raw_id)
        try:
            link = services().shortlinks.resolve(item_id)
        except NotFound:
            link = None
        if link is not None:
            services().clicks.track(link.id)
            return redirect(link.target_url, code=307)

        paste = services().pastes.get(item_id)
        response = _success(paste.to_response(services().config["base_url"]))
        response.headers["Cache-Control"] = "public, max-age=300"
        return response

    @app.route("/p/<raw_id>/raw", methods=["GET"])
    @app.route("/p/<raw_id>/raw.<ext>", methods=["GET"])
    @limiter.limit(_download_rate_limit)
    def raw_view(raw_id: str, ext: Optional[str] = None):
        paste, data = services().pastes.read(_split_extension(raw_id))
        mimetype = paste.mime_type
        if is_text_content(paste.mime_type):
            mimetype = "text/plain; charset=utf-8"
        response = Response(data, status=200, content_type=mimetype)
        response.headers["Cache-Control"] = "public, max-age=300"
        return response

    @app.route("/p/<raw_id>/download", methods=["GET"])
    @app.route("/p/<raw_id>/download.<ext>", methods=["GET"])
    @limiter.limit(_download_rate_limit)
    def download(raw_id: str, ext: Optional[str] = None):
        paste, stream = services().pastes.open(_split_extension(raw_id))
        lifecycle_logger.info("paste_downloaded paste_id=%s", paste.id)
        response = send_file(
            stream,
            mimetype="application/octet-stream",
            as_attachment=True,
            download_name=paste.filename,
            max_age=300,
        )
        response.headers["Content-Length"] = str(paste.size)
        return response

    @app.route("/p/<raw_id>", methods=["DELETE"])
    def delete_paste(raw_id: str):
        caller = require_caller()
        _enforce_key_limit(caller)
        services().pastes.delete(_split_extension(raw_id), caller=caller)
        return jsonify({"success": True, "message": "Paste deleted successfully"})

    @app.route("/p/<raw_id>/<delete_key>", methods=["GET", "DELETE"])
    def delete_with_key(raw_id: str, delete_key: str):
        services().pastes.delete(_split_extension(raw_id), delete_key=delete_key)
        return jsonify({"success": True, "message": "Paste deleted successfully"})

    @app.route("/p/<raw_id>/expiry", methods=["PUT"])
    def update_paste_expiry(raw_id: str):
        caller = require_caller()
        _enforce_key_limit(caller)
        payload = _json_body()
        paste = services().pastes.update_expiry(
            _split_extension(raw_id), caller, payload.get("expires_in")
        )
        return _success(paste.to_response(services().config["base_url"]))

    # Shortlinks

    @app.route("/u", methods=["POST"])
    @app.route("/u/", methods=["POST"])
    def shorten():
        caller = require_caller()
        _enforce_key_limit(caller)
        payload = _json_body()
        link = services().shortlinks.create(
            payload.get("url"),
            caller,
            title=payload.get("title"),
            expires_in=payload.get("expires_in") or None,
        )
        return _success(link.to_response(services().config["base_url"]), 201)

    @app.route("/u/list", methods=["GET"])
    def list_shortlinks():
        caller = require_caller()
        page = _int_arg("page", 1)
        limit = _int_arg("limit", None)
        items, total = services().shortlinks.list(caller, page, limit, request.args.get("sort"))
        base_url = services().config["base_url"]
        return _success(
            {
                "items": [dict(item.to_response(base_url), clicks=item.clicks) for item in items],
                "total": total,
                "page": max(page or 1, 1),
            }
        )

    @app.route("/u/<link_id>", methods=["GET"])
    def follow(link_id: str):
        link = services().shortlinks.resolve(link_id)
        services().clicks.track(link.id)
        return redirect(link.target_url, code=307)

    @app.route("/u/<link_id>/stats", methods=["GET"])
    def shortlink_stats(link_id: str):
        caller = require_caller()
        return _success(services().shortlinks.stats(link_id, caller).to_stats())

    @app.route("/u/<link_id>", methods=["DELETE"])
    def delete_shortlink(link_id: str):
        caller = require_caller()
        _enforce_key_limit(caller)
        services().shortlinks.delete(link_id, caller)
        return jsonify({"success": True, "message": "Shortlink deleted successfully"})

    @app.route("/u/<link_id>/expiry", methods=["PUT"])
    def update_shortlink_expiry(link_id: str):
        caller = require_caller()
        _enforce_key_limit(caller)
        payload = _json_body()
        link = services().shortlinks.update_expiry(link_id, caller, payload.get("expires_in"))
        return _success(link.to_response(services().config["base_url"]))

    # API keys

    @app.route("/keys/request", methods=["POST"])
    def request_api_key():
        payload = _json_body()
        services().keys.request_key(
            payload.get("email"), payload.get("name"), get_remote_address()
        )
        return jsonify(
            {"success": True, "message": "Please check your email to verify your API key"}
        )

    @app.route("/keys/verify/<token>", methods=["GET"])
    def verify_api_key(token: str):
        api_key = services().keys.verify(token)
        return _success({"api_key": api_key.key, "email": api_key.email, "name": api_key.name})

    # Operations

    @app.route("/stats", methods=["GET"])
    def stats():
        paste_count, total_bytes = services().pastes.totals()
        return _success(
            {
                "pastes": paste_count,
                "urls": services().shortlinks.count(),
                "storage_bytes": total_bytes,
                "retention": services().policy.describe(),
            }
        )

    @app.route("/health", methods=["GET"])
    def health_check():
        checks: Dict[str, Any] = {}
        healthy = True

        try:
            services().store.ping()
            checks["database"] = "ok"
        except PasteHostError as error:
            checks["database"] = f"error: {str(error)[:100]}"
            healthy = False

        if isinstance(services().backends.active, LocalStorageBackend):
            try:
                root = uploads_dir()
                root.mkdir(parents=True, exist_ok=True)
                probe_file = root / f".health_check_{uuid.uuid4().hex}"
                probe_file.write_text("health_check", encoding="utf-8")
                probe_file.unlink(missing_ok=True)
                checks["uploads_writable"] = "ok"
                checks["disk_space_gb"] = round(shutil.disk_usage(root).free / (1024 ** 3), 2)
            except OSError as error:
                checks["uploads_writable"] = f"error: {str(error)[:100]}"
                healthy = False
        else:
            checks["storage_backend"] = services().backends.active.name

        cleanup = services().cleanup
        checks["cleanup_state"] = cleanup.state
        checks["scheduler_running"] = cleanup.running
        next_run = cleanup.next_run_time()
        if next_run is not None:
            checks["cleanup_next_run"] = next_run.isoformat()

        return jsonify(
            {
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": time.time(),
                "checks": checks,
            }
        ), (200 if healthy else 503)

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
