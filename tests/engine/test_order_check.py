import pytest

from settle.engine.models import FileDesired, Kind, ResourceDeclaration
from settle.engine.planner import check_order
from settle.errors import DeclarationError, PrerequisiteUnmet
from settle.observers.dispatcher import EventBus
from settle.observers.events import OrderChecked, new_ctx

class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

def _r(id, requires=()):
    return ResourceDeclaration(
        id=id, kind=Kind.FILE, target=f"/etc/{id}", desired=FileDesired(content=b""), requires=tuple(requires),
    )

def _ctx():
    return new_ctx(host="web1", mode="apply", run_id="run-1")

def test_declared_order_kept_and_emitted():
    cap = Capture()
    decls = [_r("c"), _r("a", ["c"]), _r("b", ["a", "c"])]
    check_order(decls, bus=EventBus([cap]), run_ctx=_ctx())
    (ev,) = cap.events
    assert isinstance(ev, OrderChecked)
    assert ev.order == ["c", "a", "b"]
    assert ev.error is None

def test_prerequisite_declared_later_is_rejected():
    cap = Capture()
    with pytest.raises(PrerequisiteUnmet) as ei:
        check_order([_r("a", ["b"]), _r("b")], bus=EventBus([cap]), run_ctx=_ctx())
    assert ei.value.resource == "a"
    assert "before its prerequisite" in cap.events[0].error

def test_unknown_prerequisite_is_rejected():
    with pytest.raises(PrerequisiteUnmet, match="unknown resource 'ghost'"):
        check_order([_r("a", ["ghost"])])

def test_self_prerequisite_is_rejected():
    with pytest.raises(PrerequisiteUnmet, match="requires itself"):
        check_order([_r("a", ["a"])])

def test_duplicate_ids_rejected():
    with pytest.raises(DeclarationError, match="duplicate"):
        check_order([_r("a"), _r("a")])

def test_no_bus_emits_nothing():
    check_order([_r("a"), _r("b", ["a"])])
