"""aiohttp routes exposing the tracker service as a JSON API."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from tracklink.exceptions import MalformedReportError, SessionNotFoundError, TrackerError, TrackerStoreError
from tracklink.ingestion.messages import parse_telemetry
from tracklink.models.requests import HistoryRequest
from tracklink.models.snapshots import age_seconds
from tracklink.service import SessionChange, TrackerService

_logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", TrackerService)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _json(data: dict[str, Any], *, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=lambda obj: json.dumps(obj, default=str))


def _error(message: str, *, status: int) -> web.Response:
    return _json({"ok": False, "error": message}, status=status)


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else None
    if first is None:
        return "invalid request"
    # Custom validators raise e.g. "Value error, deviceId required".
    return str(first["msg"]).removeprefix("Value error, ")


@web.middleware
async def request_logger(request: web.Request, handler: _Handler) -> web.StreamResponse:
    start = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as exc:
        status = exc.status
        raise
    finally:
        elapsed_ms = (time.monotonic() - start) * 1000
        _logger.info("%s %s -> %s (%.0fms)", request.method, request.path_qs, status, elapsed_ms)


@web.middleware
async def cors(request: web.Request, handler: _Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)
    response.headers.update(_CORS_HEADERS)
    return response


@web.middleware
async def error_mapper(request: web.Request, handler: _Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ValidationError as exc:
        return _error(_validation_message(exc), status=400)
    except MalformedReportError as exc:
        return _error(str(exc), status=400)
    except SessionNotFoundError:
        return _error("no active session", status=404)
    except TrackerStoreError as exc:
        _logger.error("Store failure on %s %s: %s", request.method, request.path, exc)
        return _error(str(exc), status=500)
    except TrackerError as exc:
        _logger.error("Request failed %s %s: %s", request.method, request.path, exc)
        return _error(str(exc), status=500)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise MalformedReportError("invalid JSON body") from exc
    return body if isinstance(body, dict) else {}


def _session_change_body(change: SessionChange) -> dict[str, Any]:
    return {
        "ok": True,
        "deviceId": change.session.device_id,
        "sessionId": change.session.id,
        "session": change.session.model_dump(mode="json"),
        "cmdTopic": change.command.topic,
        "cmdDelivered": change.command.delivered,
    }


def _service(request: web.Request) -> TrackerService:
    return request.app[SERVICE_KEY]


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def health(request: web.Request) -> web.Response:
    return _json({"ok": True, **await _service(request).health()})


async def latest(request: web.Request) -> web.Response:
    device_id = request.query.get("deviceId", "")
    position = await _service(request).get_latest(device_id)
    if position is None:
        return _error("no data for device", status=404)
    body = position.model_dump(mode="json", exclude={"age_seconds", "source"})
    return _json({"ok": True, "latest": body, "ageSeconds": position.age_seconds, "source": position.source})


async def device_status(request: web.Request) -> web.Response:
    service = _service(request)
    device_id = request.query.get("deviceId", "")
    snapshot = await service.get_status(device_id)
    if snapshot is None:
        return _error("no status yet", status=404)
    return _json(
        {
            "ok": True,
            "deviceId": snapshot.device_id,
            "status": {**snapshot.fields, "deviceId": snapshot.device_id, "serverTs": snapshot.server_ts},
            "ageSeconds": age_seconds(int(time.time() * 1000), snapshot.server_ts),
        }
    )


async def start_session(request: web.Request) -> web.Response:
    body = await _read_json(request)
    change = await _service(request).start_session(body.get("deviceId", ""), body.get("title"))
    return _json(_session_change_body(change))


async def stop_session(request: web.Request) -> web.Response:
    body = await _read_json(request)
    change = await _service(request).stop_session(body.get("deviceId", ""))
    return _json(_session_change_body(change))


async def list_sessions(request: web.Request) -> web.Response:
    listing = await _service(request).list_sessions(request.query.get("deviceId", ""))
    return _json(
        {
            "ok": True,
            "deviceId": listing.device_id,
            "activeSessionId": listing.active_session_id,
            "sessions": [session.model_dump(mode="json") for session in listing.sessions],
        }
    )


async def session_history(request: web.Request) -> web.Response:
    query = HistoryRequest.model_validate(dict(request.query))
    points = await _service(request).get_history(query.session_id, query.limit)
    now = datetime.now(UTC)
    return _json(
        {
            "ok": True,
            "sessionId": query.session_id,
            "count": len(points),
            "points": [
                point.model_dump(mode="json", include={"lat", "lon", "device_ts", "server_ts", "created_at"})
                for point in points
            ],
            "serverNow": int(now.timestamp() * 1000),
            "serverIso": now.isoformat(),
        }
    )


async def ingest_telemetry(request: web.Request) -> web.Response:
    body = await _read_json(request)
    # Same alias set as MQTT payloads; validation errors become 400s.
    report = parse_telemetry(body)
    result = await _service(request).ingest_http_telemetry(
        report.device_id,
        report.lat,
        report.lon,
        ts=report.device_ts,
        session_hint=report.session_id_hint,
    )
    return _json(
        {
            "ok": True,
            "deviceId": result.device_id,
            "sessionId": result.session_id,
            "outcome": str(result.outcome),
        }
    )


def build_app(service: TrackerService) -> web.Application:
    """Create the aiohttp application bound to *service*.

    The service's lifecycle is owned by the caller.
    """
    app = web.Application(
        middlewares=[request_logger, cors, error_mapper],
        client_max_size=50 * 1024,
    )
    app[SERVICE_KEY] = service
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/latest", latest)
    app.router.add_get("/api/device-status", device_status)
    app.router.add_post("/api/sessions/start", start_session)
    app.router.add_post("/api/sessions/stop", stop_session)
    app.router.add_get("/api/sessions", list_sessions)
    app.router.add_get("/api/session-history", session_history)
    app.router.add_post("/api/telemetry", ingest_telemetry)
    return app
