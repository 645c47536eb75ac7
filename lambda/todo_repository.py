from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from task_ids import new_task_id
from todo_config import Settings
from todo_errors import NotFound, StoreError

STATUS_NEW = "NEW"
FIELD_OWNER_ID = "ownerId"
FIELD_STATUS = "status"
CREATE_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Task:
    id: str
    task: str
    status: str | None = None
    owner_id: str | None = None

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Task":
        status = item.get(FIELD_STATUS)
        owner_id = item.get(FIELD_OWNER_ID)
        return cls(
            id=str(item.get("id") or ""),
            task=str(item.get("task") or ""),
            status=str(status) if status else None,
            owner_id=str(owner_id) if owner_id else None,
        )

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {"id": self.id, "task": self.task}
        if self.status:
            item[FIELD_STATUS] = self.status
        if self.owner_id:
            item[FIELD_OWNER_ID] = self.owner_id
        return item

    def to_json(self) -> dict[str, Any]:
        return {"id": self.id, "task": self.task, "status": self.status}

    def owned_by(self, subject: str) -> bool:
        return bool(subject) and self.owner_id == subject


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _is_conditional_check_failed(e: Exception) -> bool:
    return isinstance(e, ClientError) and _error_code(e) == "ConditionalCheckFailedException"


class TaskRepository:
    """DynamoDB-backed task storage keyed on ``id`` with an owner GSI."""

    def __init__(self, table: Any, *, owner_index: str = "OwnerIdIndex") -> None:
        self._table = table
        self._owner_index = owner_index

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskRepository":
        resource = boto3.resource(
            "dynamodb",
            region_name=settings.aws_region or None,
            config=Config(
                connect_timeout=settings.ddb_connect_timeout,
                read_timeout=settings.ddb_read_timeout,
            ),
        )
        return cls(resource.Table(settings.table_name), owner_index=settings.owner_index)

    def create(self, owner_id: str, task: str, status: str | None = None) -> Task:
        last_err: Exception | None = None
        for _ in range(CREATE_MAX_ATTEMPTS):
            record = Task(id=new_task_id(), task=task, status=status or STATUS_NEW, owner_id=owner_id)
            try:
                self._table.put_item(
                    Item=record.to_item(),
                    ConditionExpression="attribute_not_exists(id)",
                )
                return record
            except ClientError as e:
                if _is_conditional_check_failed(e):
                    last_err = e
                    continue
                raise StoreError(f"put_item failed: {e}", code="CREATE_FAILED") from e
            except BotoCoreError as e:
                raise StoreError(f"put_item failed: {e}", code="CREATE_FAILED") from e
        raise StoreError(f"could not allocate a unique task id: {last_err}", code="CREATE_FAILED")

    def get_by_id(self, task_id: str) -> Task | None:
        try:
            resp = self._table.get_item(Key={"id": task_id})
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"get_item failed: {e}") from e
        item = resp.get("Item") if isinstance(resp, dict) else None
        if not item:
            return None
        return Task.from_item(item)

    def list_by_owner(self, owner_id: str, status: str | None = None) -> list[Task]:
        out: list[Task] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "IndexName": self._owner_index,
                "KeyConditionExpression": Key(FIELD_OWNER_ID).eq(owner_id),
            }
            if status:
                # Applied after the index narrows by owner, not as a key condition.
                kwargs["FilterExpression"] = Attr(FIELD_STATUS).eq(status)
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table.query(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"query failed: {e}") from e
            for item in page.get("Items", []) or []:
                if isinstance(item, dict):
                    out.append(Task.from_item(item))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return out

    def patch(self, task_id: str, task: str, status: str | None = None) -> dict[str, Any]:
        update_expr = "SET #task = :task"
        expr_names = {"#task": "task"}
        expr_values: dict[str, Any] = {":task": task}
        kwargs: dict[str, Any] = {
            "Key": {"id": task_id},
            "ConditionExpression": "attribute_exists(id)",
            "ReturnValues": "UPDATED_NEW",
        }
        if status:
            update_expr += ", #status = :status"
            expr_values[":status"] = status
            expr_names["#status"] = FIELD_STATUS
        kwargs["UpdateExpression"] = update_expr
        kwargs["ExpressionAttributeNames"] = expr_names
        kwargs["ExpressionAttributeValues"] = expr_values

        try:
            out = self._table.update_item(**kwargs)
        except ClientError as e:
            if _is_conditional_check_failed(e):
                raise NotFound(f"task not found: {task_id}") from e
            raise StoreError(f"update_item failed: {e}", code="UPDATE_FAILED") from e
        except BotoCoreError as e:
            raise StoreError(f"update_item failed: {e}", code="UPDATE_FAILED") from e
        return dict(out.get("Attributes") or {})

    def delete(self, task_id: str) -> None:
        try:
            self._table.delete_item(Key={"id": task_id})
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"delete_item failed: {e}", code="DELETE_FAILED") from e

    def scan_all(self) -> Iterator[Task]:
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table.scan(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"scan failed: {e}", code="SCAN_FAILED") from e
            for item in page.get("Items", []) or []:
                if isinstance(item, dict):
                    yield Task.from_item(item)
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return

    def set_missing_field(self, task_id: str, field: str, value: str) -> bool:
        try:
            self._table.update_item(
                Key={"id": task_id},
                UpdateExpression="SET #field = :value",
                ConditionExpression="attribute_exists(id) AND attribute_not_exists(#field)",
                ExpressionAttributeNames={"#field": field},
                ExpressionAttributeValues={":value": value},
            )
        except ClientError as e:
            if _is_conditional_check_failed(e):
                return False
            raise StoreError(f"update_item failed: {e}", code="UPDATE_FAILED") from e
        except BotoCoreError as e:
            raise StoreError(f"update_item failed: {e}", code="UPDATE_FAILED") from e
        return True
