from __future__ import annotations

import base64
import json
import time
import uuid
from typing import Any
from urllib.parse import unquote

from structured_log import log_event
from todo_config import Settings
from todo_errors import TodoError, ValidationError
from todo_repository import TaskRepository
from todo_service import Reply, TodoService
from token_verifier import Credential, bearer_token, verifier_from_settings

ROUTE_MARKER = "/todos"
ROUTE_COLLECTION = "todos"
ROUTE_ITEM = "todos/{id}"
ALLOWED_METHODS = {
    ROUTE_COLLECTION: {"GET", "POST"},
    ROUTE_ITEM: {"GET", "PUT", "DELETE"},
}

_settings: Settings | None = None
_service_instance: TodoService | None = None


def _config() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def _service() -> TodoService:
    global _service_instance
    if _service_instance is None:
        settings = _config()
        _service_instance = TodoService(
            TaskRepository.from_settings(settings),
            verifier_from_settings(settings),
        )
    return _service_instance


def _headers(request_id: str) -> dict[str, str]:
    return {
        "content-type": "application/json",
        "cache-control": "no-store",
        "access-control-allow-origin": _config().cors_origin,
        "access-control-allow-methods": "GET,POST,PUT,DELETE,OPTIONS",
        "access-control-allow-headers": "Content-Type,Authorization",
        "x-request-id": request_id,
    }


def _response(status_code: int, body: Any, request_id: str) -> dict[str, Any]:
    return {
        "statusCode": int(status_code),
        "headers": _headers(request_id),
        "body": "" if body is None else json.dumps(body, default=str),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(
        status_code,
        {
            "errorCode": code,
            "message": message,
            "requestId": request_id,
            "schemaVersion": _config().schema_version,
        },
        request_id,
    )


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return uuid.uuid4().hex


def _method(event: dict[str, Any]) -> str:
    method = str(event.get("httpMethod") or "").strip()
    if not method:
        rc = event.get("requestContext") or {}
        http = rc.get("http") if isinstance(rc, dict) else None
        if isinstance(http, dict):
            method = str(http.get("method") or "").strip()
    return method.upper()


def _path(event: dict[str, Any]) -> str:
    p = str(event.get("path") or event.get("rawPath") or "").strip()
    # Best effort for custom-domain stage prefixes.
    idx = p.find(ROUTE_MARKER)
    if idx >= 0:
        p = p[idx:]
    return p


def _route(event: dict[str, Any], path: str) -> tuple[str, str | None]:
    segments = [s for s in path.split("/") if s]
    if segments == ["todos"]:
        return ROUTE_COLLECTION, None
    if len(segments) == 2 and segments[0] == "todos":
        params = event.get("pathParameters") or {}
        task_id = params.get("id") if isinstance(params, dict) else None
        return ROUTE_ITEM, str(task_id or unquote(segments[1]))
    return "", None


def _parse_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if raw is None:
        return {}
    if not isinstance(raw, str):
        raise ValidationError("request body must be a JSON object", code="INVALID_BODY")
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except ValueError as e:
            raise ValidationError("request body base64 decode failed", code="INVALID_BODY") from e
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise ValidationError("request body must be valid JSON", code="INVALID_BODY") from e
    if not isinstance(parsed, dict):
        raise ValidationError("request body must be a JSON object", code="INVALID_BODY")
    return parsed


def _query_param(event: dict[str, Any], key: str) -> str:
    qs = event.get("queryStringParameters") or {}
    if not isinstance(qs, dict):
        return ""
    val = qs.get(key)
    return str(val).strip() if val is not None else ""


def _authorizer_claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


def _credential(event: dict[str, Any]) -> Credential:
    return Credential(
        token=bearer_token(event.get("headers")),
        authorizer_claims=_authorizer_claims(event),
    )


def _dispatch(event: dict[str, Any], method: str, route: str, task_id: str | None) -> Reply:
    service = _service()
    credential = _credential(event)
    if route == ROUTE_COLLECTION:
        if method == "GET":
            return service.list_tasks(credential, _query_param(event, "status") or None)
        return service.create_task(credential, lambda: _parse_body(event))
    if method == "GET":
        return service.get_task(credential, task_id)
    if method == "PUT":
        return service.update_task(credential, task_id, lambda: _parse_body(event))
    return service.delete_task(credential, task_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    method = _method(event)
    path = _path(event)
    route, task_id = _route(event, path)
    log: dict[str, Any] = {
        "requestId": request_id,
        "method": method,
        "route": route or path,
    }

    def _finish(resp: dict[str, Any], outcome: str, **extra: Any) -> dict[str, Any]:
        log.update(extra)
        log["statusCode"] = resp["statusCode"]
        log["outcome"] = outcome
        log["durationMs"] = int((time.time() - start) * 1000)
        log_event("todo_api_request", **log)
        return resp

    if method == "OPTIONS":
        return _finish(_response(204, None, request_id), "preflight")
    if not route:
        resp = _error(404, "NOT_FOUND", f"route not found: {method} {path}", request_id)
        return _finish(resp, "rejected", errorCode="NOT_FOUND")
    if method not in ALLOWED_METHODS[route]:
        resp = _error(405, "METHOD_NOT_ALLOWED", f"method not allowed: {method} {path}", request_id)
        return _finish(resp, "rejected", errorCode="METHOD_NOT_ALLOWED")

    problems = _config().problems()
    if problems:
        resp = _error(500, "MISCONFIGURED", "; ".join(problems), request_id)
        return _finish(resp, "misconfigured", errorCode="MISCONFIGURED")

    try:
        reply = _dispatch(event, method, route, task_id)
    except TodoError as e:
        resp = _error(e.status_code, e.error_code, e.message, request_id)
        extra: dict[str, Any] = {"errorCode": e.error_code}
        if e.__cause__ is not None and e.status_code >= 500:
            extra["cause"] = str(e.__cause__)
        return _finish(resp, "failed" if e.status_code >= 500 else "rejected", **extra)
    except Exception as e:
        resp = _error(500, "INTERNAL_ERROR", "internal error", request_id)
        return _finish(resp, "failed", errorCode="INTERNAL_ERROR", cause=repr(e))

    return _finish(_response(reply.status_code, reply.body, request_id), "success")
