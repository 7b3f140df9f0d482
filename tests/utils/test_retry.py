import json

import pytest

from settle.engine.models import ChangeRecord, LedgerSummary, RunResult, RunStatus
from settle.errors import ProbeError
from settle.utils.execution import Mode
from settle.utils.retry import RetryError, retry
from settle.utils.serialize import to_jsonable


def test_retry_until_success():
    calls = []

    @retry(retries=3, delay=0)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("not yet")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_retry_exhausted_wraps_last_error():
    seen = []

    @retry(retries=2, delay=0, on_retry=lambda attempt, exc: seen.append(attempt))
    def always():
        raise OSError("down")

    with pytest.raises(RetryError) as ei:
        always()
    assert isinstance(ei.value.__cause__, OSError)
    assert seen == [1]


def test_retry_reraise_and_should_retry():
    calls = []

    @retry(retries=5, delay=0, retry_on=(ProbeError,), should_retry=lambda e: e.transient, reraise=True)
    def probe():
        calls.append(1)
        raise ProbeError("permission", "motd", "denied")

    with pytest.raises(ProbeError):
        probe()
    assert len(calls) == 1


def test_unlisted_exception_is_not_retried():
    calls = []

    @retry(retries=3, delay=0, retry_on=(OSError,))
    def bad():
        calls.append(1)
        raise KeyError("x")

    with pytest.raises(KeyError):
        bad()
    assert len(calls) == 1


def test_run_result_serializes_to_json():
    err = ProbeError("timeout", "motd", "timed out after 5s")
    result = RunResult(
        host="web1",
        mode=Mode.CHECK,
        status=RunStatus.DONE,
        summary=LedgerSummary(total=2, changed=1, failed=1),
        records=(ChangeRecord(resource="a", changed=True), ChangeRecord(resource="motd", changed=False, error=err)),
    )
    data = json.loads(json.dumps(to_jsonable(result)))
    assert data["mode"] == "check"
    assert data["status"] == "done"
    assert data["records"][1]["error"] == {
        "type": "ProbeError",
        "kind": "probe",
        "resource": "motd",
        "detail": "[timeout] timed out after 5s",
        "probe_kind": "timeout",
    }
    assert result.exit_code == 1
    assert result.errors() == [err]
