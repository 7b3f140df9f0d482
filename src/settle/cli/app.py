# src/settle/cli/app.py
from __future__ import annotations

import concurrent.futures
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import typer

from settle.config.loader import build_run, load_declarations, load_inventory, local_inventory
from settle.config.models import DeclarationSet, HostSpec
from settle.config.secrets import SecretResolver, default_resolver
from settle.engine.coordinator import RunCoordinator
from settle.engine.models import LedgerSummary, RunResult, RunStatus
from settle.engine.planner import check_order
from settle.errors import ConnectionFailed, DeclarationError, SettleError
from settle.remote.channel import open_channel
from settle.remote.host import RemoteHost
from settle.utils.execution import Mode, RunOptions
from settle.utils.serialize import to_jsonable

from settle.logging.log import init_logging
from settle.observers.console import ConsoleObserver
from settle.observers.dispatcher import EventBus
from settle.observers.logger import LoggerObserver
from settle.observers.jsonfile import JsonFileObserver

log = logging.getLogger("settle")


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="settle: idempotent host configuration")

EXIT_FAILED = 1
EXIT_USAGE = 2


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load_inputs(declarations: Path, inventory: Optional[Path], hosts: Optional[List[str]]):
    decls = load_declarations(declarations)
    inv = load_inventory(inventory) if inventory else local_inventory()
    try:
        targets = inv.select(hosts)
    except ValueError as exc:
        raise DeclarationError(str(exc)) from exc
    if not targets:
        raise DeclarationError("inventory selects no hosts")
    return decls, targets


def converge_host(
    *,
    host: HostSpec,
    decls: DeclarationSet,
    base_dir: Path,
    mode: Mode,
    options: RunOptions,
    bus: EventBus,
    run_id: str,
    secrets: Optional[SecretResolver] = None,
    cancel: Optional[threading.Event] = None,
) -> RunResult:
    """
    One host end to end: render its declarations, open its channel, run.
    Hosts share nothing but the parsed declaration set.
    """
    try:
        resources, handlers = build_run(decls, host, base_dir=base_dir, secrets=secrets)
        channel = open_channel(host, options)
    except SettleError as exc:
        log.error("[%s] %s", host.name, exc)
        return RunResult(
            host=host.name,
            mode=mode,
            status=RunStatus.FAILED,
            summary=LedgerSummary(total=0, changed=0, failed=0),
            error=exc,
        )

    try:
        coordinator = RunCoordinator(
            RemoteHost(channel, timeout=options.command_timeout, name=host.name),
            handlers,
            options=options,
            bus=bus,
            run_id=run_id,
            cancel=cancel,
        )
        return coordinator.run(resources, mode)
    finally:
        channel.close()


def converge(
    *,
    declarations: Path,
    inventory: Optional[Path],
    hosts: Optional[List[str]],
    mode: Mode,
    forks: int,
    options: RunOptions,
    report: Optional[Path],
    events: Optional[Path],
    verbose: bool,
) -> int:
    logger, run_id, log_path = init_logging(verbose=verbose)

    try:
        decls, targets = _load_inputs(declarations, inventory, hosts)
    except DeclarationError as exc:
        typer.secho(f"error: {exc}", fg=typer.colors.RED, err=True)
        return EXIT_USAGE

    observers = [ConsoleObserver(), LoggerObserver(logger)]
    if events:
        observers.append(JsonFileObserver(events))
    bus = EventBus(observers)
    secrets = default_resolver(declarations)
    cancel = threading.Event()

    typer.secho(f"settle {mode.value}", bold=True)
    typer.echo(f"  Run ID : {run_id}")
    typer.echo(f"  Logs   : {log_path}")
    typer.echo(f"  Hosts  : {', '.join(h.name for h in targets)}")

    results: Dict[str, RunResult] = {}
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max(1, min(forks, len(targets))),
        thread_name_prefix="settle",
    ) as pool:
        futures = {
            pool.submit(
                converge_host,
                host=h,
                decls=decls,
                base_dir=declarations.parent,
                mode=mode,
                options=options,
                bus=bus,
                run_id=run_id,
                secrets=secrets,
                cancel=cancel,
            ): h.name
            for h in targets
        }
        try:
            for fut in concurrent.futures.as_completed(futures):
                results[futures[fut]] = fut.result()
        except KeyboardInterrupt:
            # running hosts stop at their next resource boundary
            cancel.set()
            typer.secho("interrupted, stopping after current resources...", fg=typer.colors.RED, err=True)
            for fut, name in futures.items():
                results[name] = fut.result()

    ordered = [results[h.name] for h in targets]
    if report:
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(
            {"run_id": run_id, "mode": mode.value, "hosts": [to_jsonable(r) | {"exit_code": r.exit_code} for r in ordered]},
            indent=2,
        ))
        typer.echo(f"Report written to {report}")

    for r in ordered:
        if r.exit_code == 0:
            continue
        for exc in r.errors():
            where = f"{r.host}: {exc.resource}" if exc.resource else r.host
            typer.secho(f"  {where}: {exc}", fg=typer.colors.RED, err=True)

    if any(isinstance(r.error, ConnectionFailed) for r in ordered):
        typer.secho("one or more hosts were unreachable", fg=typer.colors.RED, err=True)
    return 0 if all(r.exit_code == 0 for r in ordered) else EXIT_FAILED


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

def _run_command(mode: Mode, **kwargs) -> None:
    code = converge(mode=mode, **kwargs)
    raise typer.Exit(code)


@app.command()
def apply(
    declarations: Path = typer.Argument(..., exists=True, dir_okay=False, help="Declaration YAML"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", exists=True, dir_okay=False),
    host: Optional[List[str]] = typer.Option(None, "--host", "-H", help="Limit to these inventory hosts"),
    check: bool = typer.Option(False, "--check", help="Predict changes without applying them"),
    forks: int = typer.Option(5, "--forks", "-f", min=1),
    timeout: float = typer.Option(60.0, "--timeout", help="Per remote command timeout (s)"),
    probe_retries: int = typer.Option(2, "--probe-retries", min=0),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the JSON run report here"),
    events: Optional[Path] = typer.Option(None, "--events", help="Append JSON-lines events here"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Converge the selected hosts."""
    _run_command(
        Mode.CHECK if check else Mode.APPLY,
        declarations=declarations,
        inventory=inventory,
        hosts=host,
        forks=forks,
        options=RunOptions(command_timeout=timeout, probe_retries=probe_retries),
        report=report,
        events=events,
        verbose=verbose,
    )


@app.command()
def check(
    declarations: Path = typer.Argument(..., exists=True, dir_okay=False, help="Declaration YAML"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", exists=True, dir_okay=False),
    host: Optional[List[str]] = typer.Option(None, "--host", "-H"),
    forks: int = typer.Option(5, "--forks", "-f", min=1),
    timeout: float = typer.Option(60.0, "--timeout"),
    report: Optional[Path] = typer.Option(None, "--report"),
    events: Optional[Path] = typer.Option(None, "--events"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Dry run: report what apply would change. Never mutates a host."""
    _run_command(
        Mode.CHECK,
        declarations=declarations,
        inventory=inventory,
        hosts=host,
        forks=forks,
        options=RunOptions(command_timeout=timeout),
        report=report,
        events=events,
        verbose=verbose,
    )


@app.command()
def validate(
    declarations: Path = typer.Argument(..., exists=True, dir_okay=False),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", exists=True, dir_okay=False),
    host: Optional[List[str]] = typer.Option(None, "--host", "-H"),
):
    """Parse, render and order-check declarations for every host. No connection is made."""
    try:
        decls, targets = _load_inputs(declarations, inventory, host)
        secrets = default_resolver(declarations)
        for h in targets:
            resources, handlers = build_run(decls, h, base_dir=declarations.parent, secrets=secrets)
            check_order(resources)
            typer.echo(f"{h.name}: {len(resources)} resources, {len(handlers)} handlers, order ok")
    except SettleError as exc:
        typer.secho(f"error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_USAGE)


if __name__ == "__main__":
    app()
