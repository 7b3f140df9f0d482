import json
import logging
from pathlib import Path

from settle.engine.coordinator import RunCoordinator
from settle.engine.models import FileDesired, HandlerSpec, Kind, ResourceDeclaration
from settle.observers.dispatcher import EventBus
from settle.observers.events import (
    HandlerFlushed,
    OrderChecked,
    ResourceFailed,
    ResourceProbed,
    ResourceReconciled,
    RunFinished,
    RunStarted,
    new_ctx,
)
from settle.observers.jsonfile import JsonFileObserver
from settle.observers.logger import LoggerObserver
from settle.remote.channel import LocalChannel
from settle.remote.host import RemoteHost
from settle.utils.execution import Mode

class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

class Broken:
    def notify(self, ev): raise RuntimeError("observer bug")


def _decls(tmp_path: Path):
    return [
        ResourceDeclaration(
            id="motd", kind=Kind.FILE, target=str(tmp_path / "motd"),
            desired=FileDesired(content=b"hi\n"), notify=("touch",),
        ),
        ResourceDeclaration(
            id="dir-as-file", kind=Kind.FILE, target=str(tmp_path),
            desired=FileDesired(content=b""),
        ),
    ]


def _handlers(tmp_path: Path):
    return [HandlerSpec(name="touch", command=f"touch '{tmp_path / 'touched'}'")]


def test_run_emits_lifecycle_in_order(tmp_path: Path):
    cap = Capture()
    coord = RunCoordinator(
        RemoteHost(LocalChannel(), name="local"), _handlers(tmp_path),
        bus=EventBus([Broken(), cap]), run_id="run-42",
    )
    coord.run(_decls(tmp_path), Mode.APPLY)

    kinds = [type(e) for e in cap.events]
    assert kinds == [
        RunStarted,
        OrderChecked,
        ResourceProbed,
        ResourceReconciled,
        ResourceFailed,
        HandlerFlushed,
        RunFinished,
    ]
    assert {e.run_id for e in cap.events} == {"run-42"}
    assert {e.host for e in cap.events} == {"local"}

    reconciled = cap.events[3]
    assert reconciled.resource == "motd" and reconciled.changed
    failed = cap.events[4]
    assert failed.resource == "dir-as-file" and "malformed" in failed.error
    finished = cap.events[-1]
    assert (finished.total, finished.changed, finished.failed, finished.exit_code) == (2, 1, 1, 1)


def test_json_file_observer_appends_lines(tmp_path: Path):
    out = tmp_path / "events" / "run.jsonl"
    obs = JsonFileObserver(out)
    ctx = new_ctx(host="web1", mode="check", run_id="r1")
    obs.notify(RunStarted(resources=3, **ctx))
    obs.notify(ResourceReconciled(resource="motd", changed=True, detail="create", **ctx))

    lines = [json.loads(line) for line in out.read_text().splitlines()]
    assert [l["type"] for l in lines] == ["RunStarted", "ResourceReconciled"]
    assert lines[0]["resources"] == 3
    assert lines[1]["host"] == "web1" and lines[1]["mode"] == "check"


def test_logger_observer_logs_at_debug(caplog):
    logger = logging.getLogger("observer-test")
    ctx = new_ctx(host="web1", mode="apply", run_id="r1")
    with caplog.at_level(logging.DEBUG, logger="observer-test"):
        LoggerObserver(logger).notify(HandlerFlushed(name="restart-sshd", fired=True, would_fire=False, **ctx))
    assert "[EVENT] HandlerFlushed" in caplog.text
    assert "name=restart-sshd" in caplog.text


def test_bus_survives_broken_observer():
    cap = Capture()
    bus = EventBus([Broken(), cap])
    bus.emit(RunStarted(resources=0, **new_ctx(host="h", mode="check")))
    assert len(cap.events) == 1
