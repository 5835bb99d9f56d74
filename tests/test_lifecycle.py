from typing import Any, cast

import pytest

from prism_driver.clients.http import RequestFailure
from prism_driver.clients.prism import TaskRef
from prism_driver.schemas import MachineStatus, PowerState, Task, TaskStatus
from prism_driver.services.lifecycle import LifecycleError, LifecycleManager, power_intent


VM = {
    "api_version": "3.1",
    "metadata": {"kind": "vm", "uuid": "vm-1", "spec_version": 3},
    "spec": {"name": "m1", "resources": {"power_state": "ON", "num_sockets": 2}},
    "status": {"resources": {"power_state": "ON"}},
}


def _failure(status_code: int | None = None) -> RequestFailure:
    return RequestFailure(
        method="GET",
        url="vm-1",
        attempts=1,
        error_type="HTTPStatusError" if status_code else "ConnectError",
        detail="failed",
        status_code=status_code,
    )


class FakePrismClient:
    def __init__(
        self,
        statuses: list[TaskStatus] | None = None,
        error_detail: str | None = None,
        vm: dict | None = None,
        read_error: RequestFailure | None = None,
        delete_error: RequestFailure | None = None,
    ):
        self.statuses = statuses or [TaskStatus.SUCCEEDED]
        self.error_detail = error_detail
        self.vm = vm or VM
        self.read_error = read_error
        self.delete_error = delete_error
        self.updates: list[dict] = []
        self.deleted: list[str] = []
        self.task_polls = 0

    def get_vm(self, vm_uuid: str) -> dict:
        if self.read_error:
            raise self.read_error
        return self.vm

    def update_vm(self, vm_uuid: str, intent: dict) -> TaskRef:
        self.updates.append(intent)
        return TaskRef(task_uuid=f"task-{len(self.updates)}", entity_uuid=vm_uuid)

    def delete_vm(self, vm_uuid: str) -> TaskRef:
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(vm_uuid)
        return TaskRef(task_uuid="task-del", entity_uuid=vm_uuid)

    def get_task(self, task_uuid: str) -> Task:
        status = self.statuses[min(self.task_polls, len(self.statuses) - 1)]
        self.task_polls += 1
        return Task(uuid=task_uuid, status=status, error_detail=self.error_detail)


def _manager(client: FakePrismClient, attempts: int = 1200) -> LifecycleManager:
    return LifecycleManager(
        cast(Any, client), poll_interval_sec=1, poll_attempts=attempts, sleep=lambda _: None
    )


def test_power_intent_drops_status_and_sets_power_state():
    intent = power_intent(VM, PowerState.OFF)
    assert "status" not in intent
    assert intent["metadata"]["spec_version"] == 3
    assert intent["spec"]["resources"] == {"power_state": "OFF", "num_sockets": 2}
    assert VM["spec"]["resources"]["power_state"] == "ON"


def test_stop_submits_off_and_waits():
    client = FakePrismClient(statuses=[TaskStatus.RUNNING, TaskStatus.SUCCEEDED])
    _manager(client).stop("vm-1")
    assert client.updates[0]["spec"]["resources"]["power_state"] == "OFF"
    assert client.task_polls == 2


def test_kill_is_stop():
    client = FakePrismClient()
    _manager(client).kill("vm-1")
    assert [u["spec"]["resources"]["power_state"] for u in client.updates] == ["OFF"]


def test_restart_stops_then_starts():
    client = FakePrismClient()
    _manager(client).restart("vm-1")
    assert [u["spec"]["resources"]["power_state"] for u in client.updates] == ["OFF", "ON"]


def test_start_fails_fast_on_failed_task():
    client = FakePrismClient(
        statuses=[TaskStatus.RUNNING, TaskStatus.FAILED], error_detail="host\ndown"
    )
    with pytest.raises(LifecycleError) as excinfo:
        _manager(client).start("vm-1")
    assert client.task_polls == 2
    assert excinfo.value.detail == "host down"
    assert excinfo.value.operation == "start"


def test_stop_timeout_raises():
    client = FakePrismClient(statuses=[TaskStatus.RUNNING])
    with pytest.raises(LifecycleError, match="unable to stop vm"):
        _manager(client, attempts=3).stop("vm-1")
    assert client.task_polls == 3


def test_start_read_error_is_fatal():
    client = FakePrismClient(read_error=_failure())
    with pytest.raises(LifecycleError):
        _manager(client).start("vm-1")
    assert client.updates == []


def test_remove_empty_uuid_is_noop():
    client = FakePrismClient()
    _manager(client).remove("")
    _manager(client).remove(None)
    assert client.deleted == []


def test_remove_waits_for_delete_task():
    client = FakePrismClient()
    _manager(client).remove("vm-1")
    assert client.deleted == ["vm-1"]
    assert client.task_polls == 1


def test_remove_not_found_is_success():
    _manager(FakePrismClient(delete_error=_failure(404))).remove("vm-1")


def test_remove_entity_not_found_task_is_success():
    client = FakePrismClient(
        statuses=[TaskStatus.FAILED], error_detail="kind=vm ENTITY_NOT_FOUND"
    )
    _manager(client).remove("vm-1")


def test_remove_other_failure_raises():
    client = FakePrismClient(delete_error=_failure(500))
    with pytest.raises(LifecycleError):
        _manager(client).remove("vm-1")


def test_get_state_maps_power_state():
    on = {"status": {"resources": {"power_state": "ON"}}}
    off = {"status": {"resources": {"power_state": "off"}}}
    other = {"status": {"resources": {"power_state": "PAUSED"}}}
    assert _manager(FakePrismClient(vm=on)).get_state("vm-1") == MachineStatus.RUNNING
    assert _manager(FakePrismClient(vm=off)).get_state("vm-1") == MachineStatus.STOPPED
    assert _manager(FakePrismClient(vm=other)).get_state("vm-1") == MachineStatus.UNKNOWN


def test_get_state_read_error_is_error_state():
    client = FakePrismClient(read_error=_failure())
    assert _manager(client).get_state("vm-1") == MachineStatus.ERROR
