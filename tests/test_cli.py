import json
import logging

import pytest

from deyncare_billing import cli
from deyncare_billing.errors import StoreUnavailableError


def test_runs_single_task(services, caplog):
    caplog.set_level(logging.INFO)
    services.state_machine.create("shop_1", "trial")

    assert cli.main(["trialReminders"], services=services) == cli.EXIT_OK

    summaries = [json.loads(r.message) for r in caplog.records if r.message.startswith("{")]
    assert [s["job"] for s in summaries] == ["trialReminders"]
    assert summaries[0]["processed"] == 0


def test_runs_all_tasks_by_default(services, caplog):
    caplog.set_level(logging.INFO)

    assert cli.main([], services=services) == cli.EXIT_OK

    jobs = [json.loads(r.message)["job"] for r in caplog.records if r.message.startswith("{")]
    assert jobs == ["trialReminders", "expiryReminders", "autoRenewals", "deactivateExpired"]


def test_unknown_task_is_usage_error(services):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["nightly"], services=services)
    assert excinfo.value.code == 2


def test_fatal_error_exits_non_zero(services, monkeypatch):
    def broken(task):
        raise StoreUnavailableError("database unavailable")

    monkeypatch.setattr(services.scheduler, "run", broken)
    assert cli.main(["autoRenewals"], services=services) == cli.EXIT_FATAL
