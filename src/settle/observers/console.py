# src/settle/observers/console.py
import typer

from .events import (
    BaseEvent,
    HandlerFlushed,
    ResourceFailed,
    ResourceReconciled,
    RunFinished,
)


class ConsoleObserver:
    """Ansible-like one line per resource, only for the events a human reads."""

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, ResourceReconciled):
            if event.changed:
                verb = "would change" if event.mode == "check" else "changed"
                typer.secho(f"{verb}: [{event.host}] {event.resource} ({event.detail})", fg=typer.colors.YELLOW)
            else:
                typer.secho(f"ok: [{event.host}] {event.resource}", fg=typer.colors.GREEN)
        elif isinstance(event, ResourceFailed):
            typer.secho(f"failed: [{event.host}] {event.resource}: {event.error}", fg=typer.colors.RED)
        elif isinstance(event, HandlerFlushed):
            if event.error:
                typer.secho(f"handler failed: [{event.host}] {event.name}: {event.error}", fg=typer.colors.RED)
            elif event.would_fire:
                typer.secho(f"handler would fire: [{event.host}] {event.name}", fg=typer.colors.YELLOW)
            else:
                typer.secho(f"handler fired: [{event.host}] {event.name}", fg=typer.colors.YELLOW)
        elif isinstance(event, RunFinished):
            typer.secho(
                f"[{event.host}] {event.status}: total={event.total} changed={event.changed} failed={event.failed}",
                bold=True,
            )
