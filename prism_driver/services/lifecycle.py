import copy
import logging
import time

from prism_driver.clients.http import RequestFailure
from prism_driver.clients.prism import PrismClient
from prism_driver.config import Settings
from prism_driver.schemas import MachineStatus, PowerState
from prism_driver.services.polling import (
    PollTimeout,
    Sleep,
    TaskFailed,
    power_state,
    wait_for_task,
)


logger = logging.getLogger(__name__)

ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"


class LifecycleError(RuntimeError):
    def __init__(self, *, vm_uuid: str, operation: str, detail: str):
        self.vm_uuid = vm_uuid
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed vm_uuid={vm_uuid}: {detail}")


def power_intent(vm: dict, target: PowerState) -> dict:
    spec = vm.get("spec")
    metadata = vm.get("metadata")
    if not isinstance(spec, dict) or not isinstance(metadata, dict):
        raise ValueError("vm record carries no spec or metadata")
    spec = copy.deepcopy(spec)
    spec.setdefault("resources", {})["power_state"] = target.value
    return {
        "api_version": vm.get("api_version") or "3.1",
        "metadata": copy.deepcopy(metadata),
        "spec": spec,
    }


class LifecycleManager:
    def __init__(
        self,
        client: PrismClient,
        *,
        poll_interval_sec: float = 1.0,
        poll_attempts: int = 1200,
        sleep: Sleep = time.sleep,
    ):
        self.client = client
        self.poll_interval_sec = poll_interval_sec
        self.poll_attempts = poll_attempts
        self.sleep = sleep

    @classmethod
    def from_settings(cls, client: PrismClient, settings: Settings) -> "LifecycleManager":
        return cls(
            client,
            poll_interval_sec=settings.lifecycle_poll_interval_sec,
            poll_attempts=settings.lifecycle_poll_attempts,
        )

    def _wait(self, task_uuid: str, vm_uuid: str, operation: str) -> None:
        try:
            wait_for_task(
                self.client,
                task_uuid,
                attempts=self.poll_attempts,
                interval_sec=self.poll_interval_sec,
                sleep=self.sleep,
                waiting_for=f"vm {vm_uuid} {operation}",
            )
        except TaskFailed as exc:
            raise LifecycleError(vm_uuid=vm_uuid, operation=operation, detail=exc.detail) from exc
        except PollTimeout as exc:
            raise LifecycleError(
                vm_uuid=vm_uuid, operation=operation, detail=f"unable to {operation} vm"
            ) from exc

    def _set_power_state(self, vm_uuid: str, target: PowerState, operation: str) -> None:
        logger.info("%s vm uuid=%s", operation, vm_uuid)
        try:
            vm = self.client.get_vm(vm_uuid)
            ref = self.client.update_vm(vm_uuid, power_intent(vm, target))
            self._wait(ref.task_uuid, vm_uuid, operation)
        except (RequestFailure, ValueError) as exc:
            raise LifecycleError(vm_uuid=vm_uuid, operation=operation, detail=str(exc)) from exc

    def start(self, vm_uuid: str) -> None:
        self._set_power_state(vm_uuid, PowerState.ON, "start")

    def stop(self, vm_uuid: str) -> None:
        self._set_power_state(vm_uuid, PowerState.OFF, "stop")

    def kill(self, vm_uuid: str) -> None:
        self.stop(vm_uuid)

    def restart(self, vm_uuid: str) -> None:
        self.stop(vm_uuid)
        self.start(vm_uuid)

    def remove(self, vm_uuid: str | None) -> None:
        if not vm_uuid:
            logger.info("vm uuid is empty, nothing to remove")
            return
        logger.info("deleting vm uuid=%s", vm_uuid)
        try:
            ref = self.client.delete_vm(vm_uuid)
        except RequestFailure as exc:
            if exc.status_code == 404:
                logger.info("vm already deleted uuid=%s", vm_uuid)
                return
            raise LifecycleError(vm_uuid=vm_uuid, operation="remove", detail=str(exc)) from exc
        except ValueError as exc:
            raise LifecycleError(vm_uuid=vm_uuid, operation="remove", detail=str(exc)) from exc

        try:
            self._wait(ref.task_uuid, vm_uuid, "remove")
        except LifecycleError as exc:
            if ENTITY_NOT_FOUND in exc.detail:
                logger.info("vm already deleted uuid=%s", vm_uuid)
                return
            raise
        except RequestFailure as exc:
            raise LifecycleError(vm_uuid=vm_uuid, operation="remove", detail=str(exc)) from exc

    def get_state(self, vm_uuid: str) -> MachineStatus:
        try:
            vm = self.client.get_vm(vm_uuid)
        except RequestFailure as exc:
            logger.warning("vm state read failed uuid=%s: %s", vm_uuid, exc)
            return MachineStatus.ERROR
        state = power_state(vm)
        if state == PowerState.ON:
            return MachineStatus.RUNNING
        if state == PowerState.OFF:
            return MachineStatus.STOPPED
        return MachineStatus.UNKNOWN
