from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from rich.console import Console

DEFAULT_STACK_NAME = "TodoStack"
TODO_STACK_NAME = "TODO_STACK_NAME"

_ERROR_CONSOLE = Console(stderr=True)


class TodoOpsError(Exception):
    pass


class UsageError(TodoOpsError):
    pass


class OpError(TodoOpsError):
    pass


@dataclass(frozen=True)
class GlobalOpts:
    stack: str
    pretty: bool


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported values.
    load_dotenv()


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _global_opts(*, stack: str | None, pretty: bool) -> GlobalOpts:
    name = (stack or "").strip() or _env_or_none(TODO_STACK_NAME) or DEFAULT_STACK_NAME
    return GlobalOpts(stack=name, pretty=bool(pretty))


def _account_session() -> Any:
    profile = _env_or_none("AWS_PROFILE")
    region = _env_or_none("AWS_REGION", "AWS_DEFAULT_REGION")
    if not region:
        raise UsageError("missing AWS_REGION (set env or pass --region)")
    return boto3.session.Session(profile_name=profile, region_name=region)


def _require_stack_output(session: Any, *, stack: str, key: str) -> str:
    try:
        described = session.client("cloudformation").describe_stacks(StackName=stack)
    except (ClientError, BotoCoreError) as e:
        raise OpError(f"could not describe stack {stack!r}: {e}") from e
    found = described.get("Stacks") or []
    if not found:
        raise OpError(f"stack not found: {stack}")
    by_key = {
        str(o.get("OutputKey") or "").strip(): str(o.get("OutputValue") or "").strip()
        for o in found[0].get("Outputs") or []
        if isinstance(o, dict)
    }
    if key in by_key:
        return by_key[key]
    raise OpError(f"missing CloudFormation output {key!r} on stack {stack!r}")


def _invoke_json(session: Any, *, function_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    client = session.client("lambda")
    try:
        resp = client.invoke(
            FunctionName=function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(payload).encode("utf-8"),
        )
    except (ClientError, BotoCoreError) as e:
        raise OpError(f"lambda invoke failed for {function_name}: {e}") from e
    raw = resp["Payload"].read() if resp.get("Payload") is not None else b""
    try:
        body = json.loads(raw.decode("utf-8")) if raw else {}
    except ValueError as e:
        raise OpError(f"invalid response payload from {function_name}: {e}") from e
    if resp.get("FunctionError"):
        msg = body.get("errorMessage") if isinstance(body, dict) else None
        raise OpError(f"{function_name} failed: {msg or resp.get('FunctionError')}")
    if not isinstance(body, dict):
        raise OpError(f"unexpected response payload from {function_name}")
    return body


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")
