from __future__ import annotations

import math
import os
import threading
from typing import Any, Dict, Iterable, Optional

from flask import Flask, Response, current_app, g, jsonify, request, send_file

from app.rankings.config_validation import validate_runtime_config
from app.rankings.crawler import CrawlResult
from app.rankings.error_codes import (
    CrawlError,
    RankingsError,
    SourcePolicyError,
    UnknownScopeError,
    ValidationError,
)
from app.rankings import config, prefetch
from app.rankings.healthcheck import run_health_checks
from app.rankings.logging_utils import _ranking_event
from app.rankings.models import Record, Scope
from app.rankings.rate_limiter import request_cost
from app.rankings.reporting import export_snapshot_to_excel
from app.rankings.service import RankingService
from app.rankings.utils import ensure_dirs

# Endpoints that return a whole snapshot cost double.
FULL_SNAPSHOT_ENDPOINTS = {"api_rankings", "api_server_rankings", "api_export_xlsx"}
# Endpoints that always bypass the cache.
BYPASS_ENDPOINTS = {"api_rankings_refresh", "api_prefetch_start"}
ROUTE_KEYS = {"api_rankings_refresh": "rankings_refresh", "api_cache_clear": "cache_clear"}
UNLIMITED_ENDPOINTS = {"api_health", "static"}


def _service() -> RankingService:
    return current_app.extensions["rankings"]


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _scope_from_args() -> Scope:
    return _service().registry.resolve(request.args.get("region"), request.args.get("server"))


def _records_payload(records: Iterable[Record]) -> list[Dict[str, Any]]:
    return [record.to_dict() for record in records]


def _snapshot_payload(result: CrawlResult) -> Dict[str, Any]:
    snapshot = result.snapshot
    return {
        "ok": True,
        "scope": snapshot.scope_id,
        "source": result.source,
        "captured_at": snapshot.captured_at,
        "page_count": snapshot.page_count,
        "partial": snapshot.partial,
        "count": len(snapshot),
        "records": _records_payload(snapshot.records),
    }


def _status_for(exc: RankingsError) -> int:
    if isinstance(exc, UnknownScopeError):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, SourcePolicyError):
        return 502
    if isinstance(exc, CrawlError):
        return 503
    return 500


def _int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


def create_app(service: RankingService | None = None) -> Flask:
    ensure_dirs()
    validate_runtime_config("ui")

    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    app.extensions["rankings"] = service or RankingService.from_config()
    _register_hooks(app)
    _register_routes(app)
    return app


def _register_hooks(app: Flask) -> None:
    @app.before_request
    def enforce_rate_limit() -> Any:
        endpoint = request.endpoint or ""
        if endpoint in UNLIMITED_ENDPOINTS:
            return None
        if not config.RATE_LIMIT_ENABLED:
            return None

        cost = request_cost(
            full_snapshot=endpoint in FULL_SNAPSHOT_ENDPOINTS,
            bypass_cache=endpoint in BYPASS_ENDPOINTS or _truthy(request.args.get("refresh")),
        )
        identity = request.remote_addr or ""
        admission = _service().limiter.admit(identity, ROUTE_KEYS.get(endpoint, endpoint or request.path), cost)
        g.admission = admission
        if admission.allowed:
            return None

        retry_after = round(admission.retry_after, 3)
        response = jsonify(
            {
                "ok": False,
                "error": "rate_limited",
                "message": "Too many requests, please retry later.",
                "retry_after": retry_after,
            }
        )
        response.status_code = 429
        response.headers["Retry-After"] = str(max(1, math.ceil(admission.retry_after)))
        return response

    @app.after_request
    def add_rate_limit_headers(response: Response) -> Response:
        admission = g.get("admission")
        if admission is not None and admission.limit is not None:
            response.headers["X-RateLimit-Limit"] = str(int(admission.limit))
            response.headers["X-RateLimit-Remaining"] = str(max(0, int(admission.remaining or 0)))
        return response

    @app.errorhandler(RankingsError)
    def handle_rankings_error(exc: RankingsError) -> Any:
        status = _status_for(exc)
        _ranking_event("error", phase="api", path=request.path, status=status, error=str(exc))
        return jsonify({"ok": False, **exc.to_dict()}), status

    @app.errorhandler(ValueError)
    def handle_bad_request(exc: ValueError) -> Any:
        return jsonify({"ok": False, "error": "invalid_params", "message": str(exc)}), 400


def _register_routes(app: Flask) -> None:
    @app.get("/api/rankings")
    def api_rankings() -> Any:
        """Global leaderboard; ``refresh=1`` bypasses the cache."""

        result = _service().get_rankings(Scope(), force_refresh=_truthy(request.args.get("refresh")))
        return jsonify(_snapshot_payload(result))

    @app.get("/api/rankings/server/<region>/<server>")
    def api_server_rankings(region: str, server: str) -> Any:
        service = _service()
        scope = service.registry.resolve(region, server)
        result = service.get_rankings(scope, force_refresh=_truthy(request.args.get("refresh")))
        return jsonify(_snapshot_payload(result))

    @app.post("/api/rankings/refresh")
    def api_rankings_refresh() -> Any:
        payload = request.get_json(silent=True) or {}
        service = _service()
        scope = service.registry.resolve(payload.get("region"), payload.get("server"))
        result = service.get_rankings(scope, force_refresh=True)
        return jsonify(
            {
                "ok": True,
                "scope": result.snapshot.scope_id,
                "source": result.source,
                "count": len(result.snapshot),
                "partial": result.snapshot.partial,
                "attempts": result.attempts,
            }
        )

    @app.get("/api/rankings/range")
    def api_rankings_range() -> Any:
        start = _int_arg("start", 1)
        end = _int_arg("end", 100)
        records = _service().query_range(_scope_from_args(), start, end)
        return jsonify({"ok": True, "start": start, "end": end, "count": len(records), "records": _records_payload(records)})

    @app.get("/api/rankings/clan/<clan_name>")
    def api_rankings_clan(clan_name: str) -> Any:
        records = _service().query_clan(_scope_from_args(), clan_name)
        return jsonify({"ok": True, "clan": clan_name, "count": len(records), "records": _records_payload(records)})

    @app.get("/api/rankings/class/<class_tag>")
    def api_rankings_class(class_tag: str) -> Any:
        records = _service().query_class(_scope_from_args(), class_tag)
        return jsonify({"ok": True, "class": class_tag.lower(), "count": len(records), "records": _records_payload(records)})

    @app.get("/api/rankings/server-name/<server_name>")
    def api_rankings_server_name(server_name: str) -> Any:
        records = _service().query_server_name(server_name)
        return jsonify({"ok": True, "server": server_name.upper(), "count": len(records), "records": _records_payload(records)})

    @app.get("/api/rankings/stats")
    def api_rankings_stats() -> Any:
        return jsonify({"ok": True, "stats": _service().stats(_scope_from_args())})

    @app.get("/api/search/character")
    def api_search_character() -> Any:
        name = (request.args.get("name") or "").strip()
        if not name:
            raise ValueError("name is required")
        records = _service().search_character(name)
        return jsonify({"ok": True, "query": name, "count": len(records), "records": _records_payload(records)})

    @app.get("/api/search/clan")
    def api_search_clan() -> Any:
        name = (request.args.get("name") or "").strip()
        if not name:
            raise ValueError("name is required")
        records = _service().search_clan(name)
        return jsonify({"ok": True, "query": name, "count": len(records), "records": _records_payload(records)})

    @app.post("/api/prefetch")
    def api_prefetch_start() -> Any:
        status = prefetch.load_status()
        if status.get("is_running"):
            return jsonify({"ok": False, "error": "already_running", "status": status}), 409

        service = _service()
        force = _truthy(request.args.get("force"))

        def _run() -> None:
            try:
                service.refresh_all(force_update=force)
            except Exception as exc:  # noqa: BLE001
                _ranking_event("error", phase="prefetch", context="background", error=str(exc))

        threading.Thread(target=_run, name="prefetch", daemon=True).start()
        return jsonify({"ok": True, "started": True, "force": force}), 202

    @app.get("/api/prefetch/status")
    def api_prefetch_status() -> Any:
        return jsonify({"ok": True, "status": prefetch.load_status()})

    @app.get("/api/cache/stats")
    def api_cache_stats() -> Any:
        service = _service()
        return jsonify({"ok": True, "cache": service.cache_stats(), "telemetry": service.telemetry.snapshot()})

    @app.post("/api/cache/clear")
    def api_cache_clear() -> Any:
        _service().clear_cache()
        return jsonify({"ok": True, "cleared": True})

    @app.get("/api/quarantine")
    def api_quarantine_list() -> Any:
        records = _service().quarantine.list(
            kind=request.args.get("kind") or None,
            action=request.args.get("action") or None,
            offset=_int_arg("offset", 0) or 0,
            limit=_int_arg("limit", 50),
            newest_first=True,
        )
        return jsonify({"ok": True, "count": len(records), "records": [r.to_dict() for r in records]})

    @app.get("/api/quarantine/stats")
    def api_quarantine_stats() -> Any:
        return jsonify({"ok": True, "stats": _service().quarantine.stats()})

    @app.post("/api/quarantine/reprocess")
    def api_quarantine_reprocess() -> Any:
        payload = request.get_json(silent=True) or {}
        summary = _service().reprocess_quarantine(payload.get("action") or "auto_fix")
        return jsonify({"ok": True, **summary})

    @app.get("/api/operations")
    def api_operations() -> Any:
        return jsonify({"ok": True, "operations": _service().recent_operations()})

    @app.get("/api/health")
    def api_health() -> Any:
        """Return a JSON health summary for configuration, filesystem, and storage."""

        service = _service()
        result = run_health_checks(entrypoint="ui", store=service.store, quarantine=service.quarantine)
        status = 200 if result.ok else 503
        return jsonify({"ok": result.ok, "checks": result.checks}), status

    @app.get("/api/exports/rankings.xlsx")
    def api_export_xlsx() -> Any:
        snapshot = _service().get_snapshot(_scope_from_args())
        path = export_snapshot_to_excel(snapshot)
        return send_file(path, as_attachment=True, download_name=path.name)


__all__ = ["create_app"]
