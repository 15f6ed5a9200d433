"""CLI entrypoint for genrelay."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from genrelay import __version__
from genrelay.orchestrator.controllers import (
    ApplyCallbackCommand,
    ChatBeginCommand,
    ChatSendCommand,
    DbCommand,
    GenerationCliController,
    LedgerCreditCommand,
    LedgerOwnerCommand,
    ListTasksCommand,
    ServeCallbacksCommand,
    SubmitTaskCommand,
    TaskIdCommand,
    WorkerCommand,
)
from genrelay.orchestrator.errors import GenrelayError
from genrelay.orchestrator.models import SessionAction, TaskKind, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GenerationCliController()

CommandT = TypeVar("CommandT")

_DB_PATH_HELP = "SQLite DB path. Defaults to GENRELAY_DB_PATH or .genrelay.db."


@click.group()
@click.version_option(version=__version__, prog_name="genrelay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for orchestration messages.",
)
def genrelay(log_level: str) -> None:
    """Generation task relay: queue, ledger, cache and provider reconciliation."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@genrelay.group()
def tasks() -> None:
    """Generation task commands."""


@tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--owner", "owner_id", required=True, help="Owner (user) id.")
@click.option(
    "--kind",
    type=click.Choice([item.value for item in TaskKind]),
    required=True,
    help="Generation kind.",
)
@click.option("--provider", default="echo", show_default=True, help="Provider adapter name.")
@click.option("--model", default="default", show_default=True, help="Provider model name.")
@click.option("--prompt", required=True, help="Prompt text.")
@click.option(
    "--reference",
    "auxiliary_ref",
    default=None,
    help="Reference asset (for example an image URL for image-to-video).",
)
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    kind: str,
    provider: str,
    model: str,
    prompt: str,
    auxiliary_ref: str | None,
) -> None:
    """Queue one generation request after validating and pricing it."""

    _emit_lines(
        _invoke(
            CONTROLLER.submit_task,
            SubmitTaskCommand(
                db_path=db_path,
                owner_id=owner_id,
                kind=kind,
                provider=provider,
                model=model,
                prompt=prompt,
                auxiliary_ref=auxiliary_ref,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def tasks_list(db_path: Path | None, status: str | None, owner_id: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, owner_id=owner_id, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task state, result and event trail."""

    _emit_lines(_invoke(CONTROLLER.inspect_task, TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending or processing task and refund its reservation."""

    _emit_lines(_invoke(CONTROLLER.cancel_task, TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("resubmit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_resubmit(db_path: Path | None, task_id: str) -> None:
    """Queue a new task with the inputs of a completed or failed one."""

    _emit_lines(
        _invoke(CONTROLLER.resubmit_task, TaskIdCommand(db_path=db_path, task_id=task_id)),
    )


@genrelay.group()
def worker() -> None:
    """Scheduler commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after claiming this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop after this many consecutive empty polls.",
)
@click.option("--forever", is_flag=True, default=False, help="Ignore --max-idle-polls.")
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Claim ready tasks and run them with bounded concurrency."""

    _emit_lines(
        _invoke(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=None if forever else max_idle_polls,
            ),
        ),
    )


@worker.command("maintenance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def worker_maintenance(db_path: Path | None) -> None:
    """Sweep expired cache and sessions and expire stale reconciliations."""

    _emit_lines(_invoke(CONTROLLER.run_maintenance, DbCommand(db_path=db_path)))


@genrelay.group()
def ledger() -> None:
    """Token ledger commands."""


@ledger.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("owner_id")
def ledger_balance(db_path: Path | None, owner_id: str) -> None:
    """Show an owner's token balance."""

    _emit_lines(
        _invoke(CONTROLLER.ledger_balance, LedgerOwnerCommand(db_path=db_path, owner_id=owner_id)),
    )


@ledger.command("credit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("owner_id")
@click.argument("amount", type=click.IntRange(min=1))
def ledger_credit(db_path: Path | None, owner_id: str, amount: int) -> None:
    """Add tokens to an owner's balance."""

    _emit_lines(
        _invoke(
            CONTROLLER.ledger_credit,
            LedgerCreditCommand(db_path=db_path, owner_id=owner_id, amount=amount),
        ),
    )


@ledger.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
)
@click.argument("owner_id")
def ledger_history(db_path: Path | None, limit: int, owner_id: str) -> None:
    """Show an owner's recent ledger entries, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.ledger_history,
            LedgerOwnerCommand(db_path=db_path, owner_id=owner_id, limit=limit),
        ),
    )


@genrelay.group()
def cache() -> None:
    """Result cache commands."""


@cache.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def cache_sweep(db_path: Path | None) -> None:
    """Delete expired cache entries."""

    _emit_lines(_invoke(CONTROLLER.cache_sweep, DbCommand(db_path=db_path)))


@genrelay.group()
def callbacks() -> None:
    """Provider callback commands."""


@callbacks.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--host", default=None, help="Bind host. Defaults to GENRELAY_CALLBACK_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65_535),
    default=None,
    help="Bind port. Defaults to GENRELAY_CALLBACK_PORT.",
)
@click.option(
    "--with-worker",
    is_flag=True,
    default=False,
    help="Also run the scheduler in a background thread.",
)
def callbacks_serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    with_worker: bool,
) -> None:
    """Serve `POST /callbacks/{provider}` for providers that push results."""

    _emit_lines(
        _invoke(
            CONTROLLER.serve_callbacks,
            ServeCallbacksCommand(db_path=db_path, host=host, port=port, with_worker=with_worker),
        ),
    )


@callbacks.command("apply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--provider", default=None, help="Provider that reported the result.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    required=True,
    help="Reported task status.",
)
@click.option("--result-json", default=None, help="Result payload as a JSON object.")
@click.option("--error", default=None, help="Provider error message.")
@click.argument("external_task_id")
def callbacks_apply(  # noqa: PLR0913
    db_path: Path | None,
    provider: str | None,
    status: str,
    result_json: str | None,
    error: str | None,
    external_task_id: str,
) -> None:
    """Replay a provider completion report by hand."""

    _emit_lines(
        _invoke(
            CONTROLLER.apply_callback,
            ApplyCallbackCommand(
                db_path=db_path,
                provider=provider,
                external_task_id=external_task_id,
                status=status,
                result_json=result_json,
                error=error,
            ),
        ),
    )


@genrelay.group()
def chat() -> None:
    """Conversational intake commands."""


@chat.command("begin")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--owner", "owner_id", required=True, help="Owner (user) id.")
@click.option(
    "--action",
    type=click.Choice([item.value for item in SessionAction]),
    required=True,
    help="What the owner's next message should do.",
)
@click.option("--provider", default="echo", show_default=True)
@click.option("--model", default="default", show_default=True)
def chat_begin(
    db_path: Path | None,
    owner_id: str,
    action: str,
    provider: str,
    model: str,
) -> None:
    """Remember the owner's chosen action until their next message."""

    _emit_lines(
        _invoke(
            CONTROLLER.chat_begin,
            ChatBeginCommand(
                db_path=db_path,
                owner_id=owner_id,
                action=action,
                provider=provider,
                model=model,
            ),
        ),
    )


@chat.command("send")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--owner", "owner_id", required=True, help="Owner (user) id.")
@click.option("--attachment", "attachment_ref", default=None, help="Attached asset reference.")
@click.argument("text", default="")
def chat_send(db_path: Path | None, owner_id: str, attachment_ref: str | None, text: str) -> None:
    """Feed one owner message through intake."""

    _emit_lines(
        _invoke(
            CONTROLLER.chat_send,
            ChatSendCommand(
                db_path=db_path,
                owner_id=owner_id,
                text=text,
                attachment_ref=attachment_ref,
            ),
        ),
    )


@genrelay.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def stats(db_path: Path | None) -> None:
    """Show queue health and result cache counters."""

    _emit_lines(_invoke(CONTROLLER.stats, DbCommand(db_path=db_path)))


def _invoke(method: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return method(command)
    except (GenrelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    genrelay()


if __name__ == "__main__":  # pragma: no cover
    main()
