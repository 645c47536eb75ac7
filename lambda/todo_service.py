from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Union

from todo_errors import Forbidden, NotFound, StoreError, ValidationError
from todo_repository import Task
from token_verifier import Credential, VerifiedClaims


class CredentialVerifier(Protocol):
    def verify(self, credential: Credential) -> VerifiedClaims: ...


# Handlers pass a thunk so that body parsing happens after authentication.
BodySource = Union[Mapping[str, Any], Callable[[], Mapping[str, Any]]]


@dataclass(frozen=True)
class Reply:
    status_code: int
    body: Any = None


def _text_field(body: Mapping[str, Any], name: str) -> str:
    raw = body.get(name)
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raise ValidationError(f"{name} must be a string", code="INVALID_BODY")
    return raw


def _require_task_text(body: Mapping[str, Any]) -> str:
    task = _text_field(body, "task")
    if not task.strip():
        raise ValidationError("task is required", code="TASK_REQUIRED")
    return task


def _optional_status(body: Mapping[str, Any]) -> str | None:
    status = _text_field(body, "status")
    return status if status.strip() else None


def _read(body: BodySource) -> Mapping[str, Any]:
    return body() if callable(body) else body


def _require_id(task_id: str | None) -> str:
    tid = str(task_id or "").strip()
    if not tid:
        raise ValidationError("id is required", code="ID_REQUIRED")
    return tid


class TodoService:
    """Per-request orchestration: authenticate, check ownership, touch the store.

    Ownership mismatches are reported as 404 on reads and 403 on writes, matching
    what existing clients of the API already rely on.
    """

    def __init__(self, repository: Any, verifier: CredentialVerifier) -> None:
        self._repo = repository
        self._verifier = verifier

    def _subject(self, credential: Credential) -> str:
        return self._verifier.verify(credential).subject

    def _owned_record(self, task_id: str, subject: str) -> Task | None:
        try:
            record = self._repo.get_by_id(task_id)
        except StoreError as e:
            raise StoreError("could not verify task ownership", code="OWNERSHIP_CHECK_FAILED") from e
        if record is not None and not record.owned_by(subject):
            raise Forbidden("task belongs to another user")
        return record

    def list_tasks(self, credential: Credential, status: str | None = None) -> Reply:
        subject = self._subject(credential)
        try:
            tasks = self._repo.list_by_owner(subject, (status or "").strip() or None)
        except StoreError as e:
            raise StoreError("could not retrieve tasks", code="LIST_FAILED") from e
        return Reply(200, [t.to_json() for t in tasks])

    def create_task(self, credential: Credential, body: BodySource) -> Reply:
        subject = self._subject(credential)
        fields = _read(body)
        task = _require_task_text(fields)
        status = _optional_status(fields)
        try:
            created = self._repo.create(subject, task, status)
        except StoreError as e:
            raise StoreError("could not create task", code="CREATE_FAILED") from e
        return Reply(201, created.to_json())

    def get_task(self, credential: Credential, task_id: str | None) -> Reply:
        subject = self._subject(credential)
        tid = _require_id(task_id)
        try:
            record = self._repo.get_by_id(tid)
        except StoreError as e:
            raise StoreError("could not retrieve task", code="READ_FAILED") from e
        # Someone else's task is indistinguishable from a missing one.
        if record is None or not record.owned_by(subject):
            raise NotFound(f"task not found: {tid}")
        return Reply(200, record.to_json())

    def update_task(self, credential: Credential, task_id: str | None, body: BodySource) -> Reply:
        subject = self._subject(credential)
        tid = _require_id(task_id)
        fields = _read(body)
        task = _require_task_text(fields)
        status = _optional_status(fields)

        if self._owned_record(tid, subject) is None:
            raise NotFound(f"task not found: {tid}")
        try:
            updated = self._repo.patch(tid, task, status)
        except StoreError as e:
            raise StoreError("could not update task", code="UPDATE_FAILED") from e
        return Reply(200, updated)

    def delete_task(self, credential: Credential, task_id: str | None) -> Reply:
        subject = self._subject(credential)
        tid = _require_id(task_id)

        if self._owned_record(tid, subject) is None:
            return Reply(204)
        try:
            self._repo.delete(tid)
        except StoreError as e:
            raise StoreError("could not delete task", code="DELETE_FAILED") from e
        return Reply(204)
