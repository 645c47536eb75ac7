"""Idempotent backfill of fields added to the task model after records existed.

Each job scans the whole table and sets ``field`` to a fixed default on records
that lack it. Writes are conditional on the field still being absent, so a
record that gained the field concurrently is skipped rather than overwritten,
and a second run performs no writes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from structured_log import log_event
from todo_config import Settings
from todo_errors import StoreError
from todo_repository import FIELD_OWNER_ID, FIELD_STATUS, STATUS_NEW, Task, TaskRepository

OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
MAX_REPORTED_FAILED_IDS = 50

_TASK_ATTR_FOR_FIELD = {
    FIELD_STATUS: "status",
    FIELD_OWNER_ID: "owner_id",
}

_repository_instance: TaskRepository | None = None


def _repository() -> TaskRepository:
    global _repository_instance
    if _repository_instance is None:
        settings = Settings.from_env()
        if not settings.table_name:
            raise RuntimeError("TODO_TABLE_NAME is required")
        _repository_instance = TaskRepository.from_settings(settings)
    return _repository_instance


@dataclass(frozen=True)
class BackfillOutcome:
    task_id: str
    result: str
    error: str = ""


@dataclass
class BackfillSummary:
    target_field: str
    value: str
    dry_run: bool = False
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def record(self, outcome: BackfillOutcome) -> None:
        self.scanned += 1
        if outcome.result == OUTCOME_UPDATED:
            self.updated += 1
        elif outcome.result == OUTCOME_FAILED:
            self.failed += 1
            if len(self.failed_ids) < MAX_REPORTED_FAILED_IDS:
                self.failed_ids.append(outcome.task_id)
        else:
            self.skipped += 1

    def to_json(self) -> dict[str, Any]:
        return {
            "field": self.target_field,
            "value": self.value,
            "dryRun": self.dry_run,
            "scanned": self.scanned,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "failedIds": list(self.failed_ids),
        }


class BackfillJob:
    def __init__(self, repository: Any, *, field: str, default_value: str) -> None:
        if field not in _TASK_ATTR_FOR_FIELD:
            raise ValueError(f"unsupported backfill field: {field}")
        if not default_value:
            raise ValueError("backfill default value must be non-empty")
        self._repo = repository
        self._field = field
        self._value = default_value

    def _has_field(self, task: Task) -> bool:
        return bool(getattr(task, _TASK_ATTR_FOR_FIELD[self._field]))

    def _apply(self, task: Task, dry_run: bool) -> BackfillOutcome:
        if self._has_field(task):
            return BackfillOutcome(task.id, OUTCOME_SKIPPED)
        if dry_run:
            return BackfillOutcome(task.id, OUTCOME_UPDATED)
        try:
            written = self._repo.set_missing_field(task.id, self._field, self._value)
        except StoreError as e:
            log_event(
                "todo_backfill_item_failed",
                field=self._field,
                taskId=task.id,
                error=e.message,
            )
            return BackfillOutcome(task.id, OUTCOME_FAILED, e.message)
        return BackfillOutcome(task.id, OUTCOME_UPDATED if written else OUTCOME_SKIPPED)

    def run(self, *, dry_run: bool = False) -> BackfillSummary:
        summary = BackfillSummary(target_field=self._field, value=self._value, dry_run=dry_run)
        # A scan failure propagates; only per-record failures are absorbed.
        for task in self._repo.scan_all():
            summary.record(self._apply(task, dry_run))
        return summary


def _run(event: dict[str, Any], field_name: str, default_value: str) -> dict[str, Any]:
    start = time.time()
    event = event if isinstance(event, dict) else {}
    request_type = str(event.get("RequestType") or "")
    physical_id = str(event.get("PhysicalResourceId") or f"todo-backfill-{field_name}")

    if request_type == "Delete":
        log_event("todo_backfill", field=field_name, outcome="noop_delete")
        return {"PhysicalResourceId": physical_id}

    dry_run = bool(event.get("dryRun"))
    job = BackfillJob(_repository(), field=field_name, default_value=default_value)
    summary = job.run(dry_run=dry_run).to_json()
    log_event(
        "todo_backfill",
        outcome="success" if summary["failed"] == 0 else "partial_failure",
        durationMs=int((time.time() - start) * 1000),
        **summary,
    )

    if request_type:
        # CloudFormation custom-resource provider contract.
        return {
            "PhysicalResourceId": physical_id,
            "Data": {k: str(summary[k]) for k in ("scanned", "updated", "skipped", "failed")},
        }
    return summary


def status_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return _run(event, FIELD_STATUS, STATUS_NEW)


def owner_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return _run(event, FIELD_OWNER_ID, Settings.from_env().legacy_owner_id)
