from __future__ import annotations

import os
import sys

import click
import typer

from . import __version__
from .cli_shared import (
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _bootstrap_env,
    _global_opts,
    _invoke_json,
    _print_json,
    _require_stack_output,
    _rich_error,
)

BACKFILL_OUTPUT_KEYS = {
    "status": "StatusBackfillFunctionName",
    "owner": "OwnerBackfillFunctionName",
}

app = typer.Typer(
    name="todo-admin",
    help="Operator helpers for a deployed todo stack.",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"todo-admin {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help="CloudFormation stack name (default: env TODO_STACK_NAME or TodoStack)",
    ),
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    if profile:
        os.environ["AWS_PROFILE"] = profile.strip()
    if region:
        os.environ["AWS_REGION"] = region.strip()
    ctx.obj = {"g": _global_opts(stack=stack, pretty=pretty)}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return _global_opts(stack=None, pretty=False)


@app.command("stack-output", help="Print one CloudFormation output of the stack.")
def stack_output(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Output key, e.g. ApiUrl or TableName"),
) -> None:
    g = _ctx_global(ctx)
    session = _account_session()
    value = _require_stack_output(session, stack=g.stack, key=key.strip())
    _print_json({"stack": g.stack, "key": key.strip(), "value": value}, pretty=g.pretty)


@app.command("backfill", help="Run a field backfill job now (status or owner).")
def backfill(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Which field to backfill: status | owner"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count records without writing"),
) -> None:
    g = _ctx_global(ctx)
    key = BACKFILL_OUTPUT_KEYS.get(target.strip().lower())
    if key is None:
        raise UsageError(f"unknown backfill target {target!r} (expected: status | owner)")
    session = _account_session()
    function_name = _require_stack_output(session, stack=g.stack, key=key)
    summary = _invoke_json(session, function_name=function_name, payload={"dryRun": bool(dry_run)})
    _print_json(summary, pretty=g.pretty)
    if int(summary.get("failed") or 0) > 0:
        raise OpError(f"backfill finished with {summary['failed']} failed record(s)")


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        _bootstrap_env()
        result = app(args=argv, prog_name="todo-admin", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
