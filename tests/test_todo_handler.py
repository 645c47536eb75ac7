import base64
import importlib
import json
import sys
from pathlib import Path

LAMBDA_DIR = str(Path(__file__).resolve().parents[1] / "lambda")
if LAMBDA_DIR not in sys.path:
    sys.path.insert(0, LAMBDA_DIR)

from task_ids import new_task_id
from todo_errors import StoreError
from todo_repository import Task
from todo_service import TodoService
from token_verifier import AuthorizerClaimsVerifier


def _load_handler(monkeypatch):
    monkeypatch.setenv("TODO_TABLE_NAME", "TodoTable")
    monkeypatch.setenv("TODO_AUTH_MODE", "authorizer")
    monkeypatch.setenv("TODO_SCHEMA_VERSION", "2026-10-01")
    import todo_handler as mod

    return importlib.reload(mod)


class FakeTasks:
    def __init__(self):
        self.items: dict[str, Task] = {}

    def create(self, owner_id, task, status=None):
        record = Task(id=new_task_id(), task=task, status=status or "NEW", owner_id=owner_id)
        self.items[record.id] = record
        return record

    def get_by_id(self, task_id):
        return self.items.get(task_id)

    def list_by_owner(self, owner_id, status=None):
        return [t for t in self.items.values() if t.owner_id == owner_id and (not status or t.status == status)]

    def patch(self, task_id, task, status=None):
        old = self.items[task_id]
        self.items[task_id] = Task(id=task_id, task=task, status=status or old.status, owner_id=old.owner_id)
        return {"task": task, **({"status": status} if status else {})}

    def delete(self, task_id):
        self.items.pop(task_id, None)


def _install_service(monkeypatch, mod, tasks=None):
    tasks = tasks if tasks is not None else FakeTasks()
    service = TodoService(tasks, AuthorizerClaimsVerifier())
    monkeypatch.setattr(mod, "_service", lambda: service)
    return tasks


def _event(*, method, path, body=None, sub="sub-1", qs=None, path_id=None, raw_body=None):
    event = {
        "httpMethod": method,
        "path": path,
        "body": raw_body if raw_body is not None else (json.dumps(body) if body is not None else None),
        "queryStringParameters": qs,
        "pathParameters": {"id": path_id} if path_id else None,
        "headers": {"content-type": "application/json"},
        "requestContext": {"requestId": "req-1"},
    }
    if sub:
        event["requestContext"]["authorizer"] = {"claims": {"sub": sub, "cognito:username": sub}}
    return event


def _body(out):
    return json.loads(out["body"]) if out["body"] else None


def test_create_then_get_roundtrip(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)

    created = mod.handler(_event(method="POST", path="/todos", body={"task": "buy milk"}), None)
    assert created["statusCode"] == 201
    assert created["headers"]["x-request-id"] == "req-1"
    assert created["headers"]["content-type"] == "application/json"
    task = _body(created)
    assert task["status"] == "NEW"

    fetched = mod.handler(_event(method="GET", path=f"/todos/{task['id']}", path_id=task["id"]), None)
    assert fetched["statusCode"] == 200
    assert _body(fetched) == task


def test_stage_prefixed_path_is_routed(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    out = mod.handler(_event(method="GET", path="/prod/todos"), None)
    assert out["statusCode"] == 200
    assert _body(out) == []


def test_http_api_event_shape_is_supported(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    event = {
        "rawPath": "/todos",
        "requestContext": {
            "requestId": "req-2",
            "http": {"method": "GET"},
            "authorizer": {"jwt": {"claims": {"sub": "sub-1"}}},
        },
    }
    out = mod.handler(event, None)
    assert out["statusCode"] == 200


def test_list_passes_status_filter(monkeypatch):
    mod = _load_handler(monkeypatch)
    tasks = _install_service(monkeypatch, mod)
    tasks.create("sub-1", "a")
    done = tasks.create("sub-1", "b", "DONE")
    out = mod.handler(_event(method="GET", path="/todos", qs={"status": "DONE"}), None)
    assert [t["id"] for t in _body(out)] == [done.id]


def test_missing_claims_is_401(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    out = mod.handler(_event(method="GET", path="/todos", sub=None), None)
    body = _body(out)
    assert out["statusCode"] == 401
    assert body["errorCode"] == "UNAUTHORIZED"
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"


def test_other_users_task_is_404_on_get_and_403_on_delete(monkeypatch):
    mod = _load_handler(monkeypatch)
    tasks = _install_service(monkeypatch, mod)
    theirs = tasks.create("sub-2", "secret")

    got = mod.handler(_event(method="GET", path=f"/todos/{theirs.id}"), None)
    assert got["statusCode"] == 404
    assert _body(got)["errorCode"] == "TASK_NOT_FOUND"

    deleted = mod.handler(_event(method="DELETE", path=f"/todos/{theirs.id}"), None)
    assert deleted["statusCode"] == 403
    assert theirs.id in tasks.items


def test_update_and_delete(monkeypatch):
    mod = _load_handler(monkeypatch)
    tasks = _install_service(monkeypatch, mod)
    mine = tasks.create("sub-1", "a")

    updated = mod.handler(_event(method="PUT", path=f"/todos/{mine.id}", body={"task": "b", "status": "DONE"}), None)
    assert updated["statusCode"] == 200
    assert _body(updated) == {"task": "b", "status": "DONE"}

    deleted = mod.handler(_event(method="DELETE", path=f"/todos/{mine.id}"), None)
    assert deleted["statusCode"] == 204
    assert deleted["body"] == ""
    again = mod.handler(_event(method="DELETE", path=f"/todos/{mine.id}"), None)
    assert again["statusCode"] == 204


def test_base64_body_is_decoded(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    raw = base64.b64encode(json.dumps({"task": "encoded"}).encode("utf-8")).decode("ascii")
    event = _event(method="POST", path="/todos", raw_body=raw)
    event["isBase64Encoded"] = True
    out = mod.handler(event, None)
    assert out["statusCode"] == 201
    assert _body(out)["task"] == "encoded"


def test_malformed_body_is_400(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    for raw in ("{not json", "[1, 2]"):
        out = mod.handler(_event(method="POST", path="/todos", raw_body=raw), None)
        assert out["statusCode"] == 400
        assert _body(out)["errorCode"] == "INVALID_BODY"


def test_empty_task_is_400(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    out = mod.handler(_event(method="POST", path="/todos", body={"task": "  "}), None)
    assert out["statusCode"] == 400
    assert _body(out)["errorCode"] == "TASK_REQUIRED"


def test_unknown_route_and_method(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)

    out = mod.handler(_event(method="GET", path="/elsewhere"), None)
    assert out["statusCode"] == 404
    assert _body(out)["errorCode"] == "NOT_FOUND"

    out = mod.handler(_event(method="PATCH", path="/todos"), None)
    assert out["statusCode"] == 405
    assert _body(out)["errorCode"] == "METHOD_NOT_ALLOWED"

    out = mod.handler(_event(method="POST", path="/todos/abc"), None)
    assert out["statusCode"] == 405


def test_preflight_short_circuits(monkeypatch):
    mod = _load_handler(monkeypatch)

    def _boom():
        raise AssertionError("service must not be built for OPTIONS")

    monkeypatch.setattr(mod, "_service", _boom)
    out = mod.handler(_event(method="OPTIONS", path="/todos"), None)
    assert out["statusCode"] == 204
    assert out["headers"]["access-control-allow-origin"] == "*"


def test_missing_configuration_is_reported(monkeypatch):
    monkeypatch.setenv("TODO_AUTH_MODE", "authorizer")
    monkeypatch.delenv("TODO_TABLE_NAME", raising=False)
    import todo_handler as mod

    mod = importlib.reload(mod)
    out = mod.handler(_event(method="GET", path="/todos"), None)
    assert out["statusCode"] == 500
    body = _body(out)
    assert body["errorCode"] == "MISCONFIGURED"
    assert "TODO_TABLE_NAME" in body["message"]


def test_store_failure_is_500_with_message(monkeypatch, capsys):
    mod = _load_handler(monkeypatch)

    class BrokenTasks(FakeTasks):
        def list_by_owner(self, owner_id, status=None):
            raise StoreError("query failed: throttled")

    _install_service(monkeypatch, mod, BrokenTasks())
    out = mod.handler(_event(method="GET", path="/todos"), None)
    body = _body(out)
    assert out["statusCode"] == 500
    assert body["errorCode"] == "LIST_FAILED"
    assert body["message"] == "could not retrieve tasks"

    log = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert log["event"] == "todo_api_request"
    assert log["outcome"] == "failed"
    assert log["statusCode"] == 500
    assert "throttled" in log["cause"]


def test_unexpected_exception_is_opaque_500(monkeypatch):
    mod = _load_handler(monkeypatch)

    class Exploding:
        def list_tasks(self, credential, status=None):
            raise RuntimeError("kaboom")

    monkeypatch.setattr(mod, "_service", lambda: Exploding())
    out = mod.handler(_event(method="GET", path="/todos"), None)
    body = _body(out)
    assert out["statusCode"] == 500
    assert body["errorCode"] == "INTERNAL_ERROR"
    assert "kaboom" not in body["message"]


def test_unauthenticated_request_with_bad_body_is_401(monkeypatch):
    mod = _load_handler(monkeypatch)
    _install_service(monkeypatch, mod)
    for method, path in (("POST", "/todos"), ("PUT", "/todos/abc")):
        out = mod.handler(_event(method=method, path=path, raw_body="{not json", sub=None), None)
        assert out["statusCode"] == 401
        assert _body(out)["errorCode"] == "UNAUTHORIZED"


def test_task_text_is_stored_verbatim(monkeypatch):
    mod = _load_handler(monkeypatch)
    tasks = _install_service(monkeypatch, mod)
    out = mod.handler(_event(method="POST", path="/todos", body={"task": "  buy milk  "}), None)
    assert _body(out)["task"] == "  buy milk  "
    assert tasks.items[_body(out)["id"]].task == "  buy milk  "
