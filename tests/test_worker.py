import pytest

from app.core.exceptions import NotFoundError
from app.models.failed_job import FailedJob
from app.models.operator_fault import OperatorFault
from app.worker import tasks


async def test_failing_job_is_dead_lettered(provider):
    with pytest.raises(NotFoundError):
        await tasks.sync_calendar({"job_id": "job-1"}, str(provider.id))

    [failed] = await FailedJob.find_all().to_list()
    assert (failed.job_name, failed.job_id, failed.args) == ("sync_calendar", "job-1", [str(provider.id)])
    assert "No calendar connected" in failed.reason


async def test_cron_wrappers_run_sweeps(client_account, grant):
    await grant(client_account, 10)
    await tasks.reconcile({})
    await tasks.expire_holds({})
    await tasks.dispatch_events({})
    assert await FailedJob.find_all().count() == 0
    assert await OperatorFault.find_all().count() == 0
