import logging
import threading
from pathlib import Path

import pytest

from settle.config.loader import load_run
from settle.config.models import HostSpec
from settle.engine.coordinator import RunCoordinator
from settle.engine.models import (
    CommandDesired,
    CommandState,
    FileDesired,
    HandlerSpec,
    Kind,
    LedgerSummary,
    LineDesired,
    ResourceDeclaration,
    RunStatus,
)
from settle.errors import (
    ApplyFailed,
    HandlerExecutionError,
    InvalidTransition,
    PrerequisiteUnmet,
    ProbeError,
    RunCancelled,
    UnknownHandlerError,
    ValidationFailed,
)
from settle.observers.dispatcher import EventBus
from settle.observers.events import ResourceReconciled
from settle.remote.channel import LocalChannel
from settle.remote.host import RemoteHost
from settle.utils.execution import Mode, RunOptions

SSHD = "Port 22\n#PasswordAuthentication yes\nPermitRootLogin yes\n"


def _host():
    return RemoteHost(LocalChannel(), timeout=10)


def _line(id, path, line, regexp=None, **kw):
    create = kw.pop("create", True)
    return ResourceDeclaration(
        id=id,
        kind=Kind.LINE_IN_FILE,
        target=str(path),
        desired=LineDesired(line=line, regexp=regexp, create=create),
        **kw,
    )


def _file(id, path, content, **kw):
    validate = kw.pop("validate", None)
    return ResourceDeclaration(
        id=id, kind=Kind.FILE, target=str(path),
        desired=FileDesired(content=content, validate=validate), **kw,
    )


def _sshd_decls(sshd: Path):
    return [
        _line("no-password", sshd, "PasswordAuthentication no", r"^#?PasswordAuthentication",
              notify=("restart-sshd",)),
        _line("no-root", sshd, "PermitRootLogin no", r"^#?PermitRootLogin",
              notify=("restart-sshd",)),
    ]


def _restart(fired: Path, **kw):
    return [HandlerSpec(name="restart-sshd", command=f"echo restart >> '{fired}'", **kw)]


# ----------------- Convergence -----------------

def test_file_converges_then_second_run_changes_nothing(tmp_path: Path):
    hosts = tmp_path / "hosts"
    hosts.write_text("127.0.0.1 old\n")
    decl = _file("hosts", hosts, b"127.0.0.1 localhost\n")

    first = RunCoordinator(_host()).run([decl], Mode.APPLY)
    assert first.status is RunStatus.DONE
    assert first.summary == LedgerSummary(total=1, changed=1, failed=0)
    assert hosts.read_bytes() == b"127.0.0.1 localhost\n"

    second = RunCoordinator(_host()).run([decl], Mode.APPLY)
    assert second.summary == LedgerSummary(total=1, changed=0, failed=0)
    assert second.exit_code == 0


def test_changed_resources_are_logged_at_the_end(tmp_path: Path, caplog):
    caplog.set_level(logging.INFO, logger="settle")
    motd = tmp_path / "motd"
    decls = [_file("motd", motd, b"hi\n"), _file("issue", tmp_path / "issue", b"")]
    (tmp_path / "issue").write_bytes(b"")

    RunCoordinator(_host()).run(decls, Mode.APPLY)
    assert [m for m in caplog.messages if m.startswith("[localhost] changed:")] == ["[localhost] changed: motd"]


def test_line_from_block_scalar_secret_is_added_once(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SETTLE_SECRETS_FILE", raising=False)
    keys = tmp_path / "authorized_keys"
    (tmp_path / "secrets.yaml").write_text("deploy_pubkey: |\n  ssh-ed25519 AAAA deploy\n")
    site = tmp_path / "site.yaml"
    site.write_text(
        "resources:\n"
        "  - id: deploy-key\n"
        "    kind: line-in-file\n"
        f"    path: {keys}\n"
        "    line: \"{{ secret('deploy_pubkey') }}\"\n"
    )
    resources, handlers = load_run(site, HostSpec(name="localhost", connection="local"))

    changed = [
        RunCoordinator(_host(), handlers).run(resources, Mode.APPLY).summary.changed
        for _ in range(3)
    ]
    assert changed == [1, 0, 0]
    assert keys.read_text() == "ssh-ed25519 AAAA deploy\n"


def test_two_resources_notify_one_handler_it_fires_once(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    fired = tmp_path / "fired.log"

    result = RunCoordinator(_host(), _restart(fired)).run(_sshd_decls(sshd), Mode.APPLY)

    assert result.status is RunStatus.DONE
    assert sshd.read_text() == "Port 22\nPasswordAuthentication no\nPermitRootLogin no\n"
    assert fired.read_text() == "restart\n"
    assert [h.name for h in result.handler_results] == ["restart-sshd"]
    assert result.handler_results[0].fired
    assert result.pending_handlers == ()

    again = RunCoordinator(_host(), _restart(fired)).run(_sshd_decls(sshd), Mode.APPLY)
    assert again.summary.changed == 0
    assert again.handler_results == ()
    assert fired.read_text() == "restart\n"


def test_check_mode_predicts_apply_and_touches_nothing(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    fired = tmp_path / "fired.log"

    check = RunCoordinator(_host(), _restart(fired)).run(_sshd_decls(sshd), Mode.CHECK)
    assert check.status is RunStatus.DONE
    assert check.summary.changed == 2
    assert sshd.read_text() == SSHD
    assert not fired.exists()
    assert check.handler_results[0].would_fire
    assert not check.handler_results[0].fired

    apply = RunCoordinator(_host(), _restart(fired)).run(_sshd_decls(sshd), Mode.APPLY)
    assert [r.changed for r in apply.records] == [r.changed for r in check.records]


def test_empty_declaration_list_is_done():
    result = RunCoordinator(_host()).run([], Mode.APPLY)
    assert result.status is RunStatus.DONE
    assert result.summary.total == 0
    assert result.exit_code == 0


def test_command_guard_makes_it_run_once(tmp_path: Path):
    marker = tmp_path / "initialised"
    decl = ResourceDeclaration(
        id="init",
        kind=Kind.COMMAND,
        target="init",
        desired=CommandDesired(command=f"touch '{marker}'", creates=str(marker)),
    )
    first = RunCoordinator(_host()).run([decl], Mode.APPLY)
    assert first.summary.changed == 1
    assert marker.exists()

    second = RunCoordinator(_host()).run([decl], Mode.APPLY)
    assert second.summary.changed == 0


# ----------------- Validation -----------------

def test_rejected_content_leaves_live_file_and_no_staging(tmp_path: Path):
    cfg = tmp_path / "cfg"
    cfg.write_text("good\n")
    fired = tmp_path / "fired.log"
    decl = _file("cfg", cfg, b"bad\n", validate="grep -q good %s", notify=("restart-sshd",))

    result = RunCoordinator(_host(), _restart(fired)).run([decl], Mode.APPLY)

    record = result.records[0]
    assert isinstance(record.error, ValidationFailed)
    assert record.changed is False
    assert cfg.read_text() == "good\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cfg"]
    assert result.handler_results == ()
    assert result.status is RunStatus.DONE
    assert result.exit_code == 1


def test_accepted_content_is_promoted(tmp_path: Path):
    cfg = tmp_path / "cfg"
    cfg.write_text("good\n")
    decl = _file("cfg", cfg, b"still good\n", validate="grep -q good %s")

    result = RunCoordinator(_host()).run([decl], Mode.APPLY)

    assert result.summary.changed == 1
    assert cfg.read_text() == "still good\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cfg"]


# ----------------- Ordering and failure -----------------

def test_failed_prerequisite_stops_dependent_resource(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    keys = tmp_path / "authorized_keys"
    decls = [
        _line("deploy-key", keys, "ssh-ed25519 AAAA deploy", create=False),
        _line("no-password", sshd, "PasswordAuthentication no", r"^#?PasswordAuthentication",
              requires=("deploy-key",)),
    ]

    result = RunCoordinator(_host()).run(decls, Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, PrerequisiteUnmet)
    assert [r.resource for r in result.records] == ["deploy-key"]
    assert isinstance(result.records[0].error, ApplyFailed)
    assert sshd.read_text() == SSHD


def test_required_failure_stops_the_run(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    decls = [
        _line("deploy-key", tmp_path / "authorized_keys", "ssh-ed25519 AAAA deploy",
              create=False, required=True),
        _line("no-password", sshd, "PasswordAuthentication no", r"^#?PasswordAuthentication"),
    ]

    result = RunCoordinator(_host()).run(decls, Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, ApplyFailed)
    assert result.error.resource == "deploy-key"
    assert len(result.records) == 1
    assert sshd.read_text() == SSHD


def test_non_required_failure_does_not_stop_later_resources(tmp_path: Path):
    other = tmp_path / "motd"
    decls = [
        _line("deploy-key", tmp_path / "authorized_keys", "key", create=False),
        _file("motd", other, b"hello\n"),
    ]
    result = RunCoordinator(_host()).run(decls, Mode.APPLY)

    assert result.status is RunStatus.DONE
    assert result.summary == LedgerSummary(total=2, changed=1, failed=1)
    assert result.exit_code == 1
    assert other.read_text() == "hello\n"


def test_misordered_prerequisite_rejected_before_anything_runs(tmp_path: Path):
    first = tmp_path / "a"
    decls = [
        _file("a", first, b"a\n", requires=("b",)),
        _file("b", tmp_path / "b", b"b\n"),
    ]
    result = RunCoordinator(_host()).run(decls, Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, PrerequisiteUnmet)
    assert result.records == ()
    assert not first.exists()


def test_unknown_handler_rejected_before_anything_runs(tmp_path: Path):
    target = tmp_path / "a"
    result = RunCoordinator(_host()).run([_file("a", target, b"a\n", notify=("nope",))], Mode.APPLY)
    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, UnknownHandlerError)
    assert not target.exists()


def test_failed_run_leaves_handlers_pending(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    fired = tmp_path / "fired.log"
    decls = _sshd_decls(sshd)[:1] + [
        _line("deploy-key", tmp_path / "authorized_keys", "key", create=False, required=True),
    ]

    result = RunCoordinator(_host(), _restart(fired)).run(decls, Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert result.pending_handlers == ("restart-sshd",)
    assert result.handler_results == ()
    assert not fired.exists()


# ----------------- Handlers -----------------

def test_critical_handler_failure_fails_run(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    handlers = [HandlerSpec(name="restart-sshd", command="exit 3", critical=True)]

    result = RunCoordinator(_host(), handlers).run(_sshd_decls(sshd), Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, HandlerExecutionError)
    assert result.summary.changed == 2
    assert result.exit_code == 1


def test_non_critical_handler_failure_is_reported(tmp_path: Path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(SSHD)
    handlers = [HandlerSpec(name="restart-sshd", command="exit 3")]

    result = RunCoordinator(_host(), handlers).run(_sshd_decls(sshd), Mode.APPLY)

    assert result.status is RunStatus.DONE
    assert result.handler_failures == 1
    assert result.exit_code == 1


# ----------------- Cancellation / lifecycle -----------------

class CancelAfterFirst:
    def __init__(self, event): self.event = event
    def notify(self, ev):
        if isinstance(ev, ResourceReconciled):
            self.event.set()


def test_cancel_stops_at_next_resource_boundary(tmp_path: Path):
    a, b = tmp_path / "a", tmp_path / "b"
    cancel = threading.Event()
    coord = RunCoordinator(_host(), bus=EventBus([CancelAfterFirst(cancel)]), cancel=cancel)

    result = coord.run([_file("a", a, b"a\n"), _file("b", b, b"b\n")], Mode.APPLY)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.error, RunCancelled)
    assert a.read_text() == "a\n"
    assert not b.exists()


def test_coordinator_is_single_use():
    coord = RunCoordinator(_host())
    coord.run([], Mode.CHECK)
    with pytest.raises(InvalidTransition):
        coord.run([], Mode.CHECK)


# ----------------- Probe retries -----------------

class FlakyProber:
    def __init__(self, failures, kind="unreachable"):
        self.failures = failures
        self.kind = kind
        self.calls = 0
    def probe(self, decl):
        self.calls += 1
        if self.calls <= self.failures:
            raise ProbeError(self.kind, decl.id, "connection reset")
        return CommandState(satisfied=True)


def _guarded():
    return ResourceDeclaration(
        id="init", kind=Kind.COMMAND, target="init",
        desired=CommandDesired(command="true", creates="/nonexistent"),
    )


def test_transient_probe_failure_is_retried():
    prober = FlakyProber(failures=2)
    coord = RunCoordinator(_host(), prober=prober, options=RunOptions(probe_retries=2, retry_delay=0))
    result = coord.run([_guarded()], Mode.APPLY)
    assert prober.calls == 3
    assert result.summary == LedgerSummary(total=1, changed=0, failed=0)


def test_probe_gives_up_after_retries():
    prober = FlakyProber(failures=10)
    coord = RunCoordinator(_host(), prober=prober, options=RunOptions(probe_retries=2, retry_delay=0))
    result = coord.run([_guarded()], Mode.APPLY)
    assert prober.calls == 3
    assert isinstance(result.records[0].error, ProbeError)
    assert result.exit_code == 1


def test_permission_probe_failure_is_not_retried():
    prober = FlakyProber(failures=10, kind="permission")
    coord = RunCoordinator(_host(), prober=prober, options=RunOptions(probe_retries=2, retry_delay=0))
    result = coord.run([_guarded()], Mode.APPLY)
    assert prober.calls == 1
    assert result.records[0].error.probe_kind == "permission"
