import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future

from prism_driver.clients.prism import PrismClient
from prism_driver.schemas import PowerState, ProvisionedVM, Task, TaskStatus


logger = logging.getLogger(__name__)

Sleep = Callable[[float], None]


class TaskFailed(RuntimeError):
    def __init__(self, task: Task):
        self.task = task
        self.detail = flatten_detail(
            task.error_detail or f"task {task.uuid} ended {task.status.value}"
        )
        super().__init__(self.detail)


class PollTimeout(TimeoutError):
    def __init__(self, waiting_for: str, attempts: int):
        self.waiting_for = waiting_for
        self.attempts = attempts
        super().__init__(f"timeout waiting for {waiting_for}")


def flatten_detail(detail: str) -> str:
    return detail.replace("\r", "").replace("\n", " ").strip()


def poll_budget(timeout_sec: float, interval_sec: float) -> int:
    if interval_sec <= 0:
        return max(int(timeout_sec), 1)
    return max(int(timeout_sec // interval_sec), 1)


def first_ip(vm: dict) -> str | None:
    resources = (vm.get("status") or {}).get("resources") or {}
    nics = resources.get("nic_list") or []
    if not nics:
        return None
    endpoints = nics[0].get("ip_endpoint_list") or []
    if not endpoints:
        return None
    ip = endpoints[0].get("ip")
    return ip if isinstance(ip, str) and ip else None


def power_state(vm: dict) -> PowerState:
    resources = (vm.get("status") or {}).get("resources") or {}
    try:
        return PowerState(str(resources.get("power_state") or "").upper())
    except ValueError:
        return PowerState.UNKNOWN


def wait_for_task(
    client: PrismClient,
    task_uuid: str,
    *,
    attempts: int,
    interval_sec: float,
    sleep: Sleep = time.sleep,
    waiting_for: str = "task",
) -> Task:
    for attempt in range(1, attempts + 1):
        task = client.get_task(task_uuid)
        if task.status == TaskStatus.SUCCEEDED:
            logger.info("%s succeeded task=%s polls=%s", waiting_for, task_uuid, attempt)
            return task
        if task.failed:
            raise TaskFailed(task)
        if attempt == attempts:
            break
        logger.info(
            "%s is in %s state task=%s attempt=%s/%s",
            waiting_for,
            task.status.value,
            task_uuid,
            attempt,
            attempts,
        )
        sleep(interval_sec)
    raise PollTimeout(waiting_for, attempts)


def wait_for_ip(
    client: PrismClient,
    vm_uuid: str,
    *,
    attempts: int,
    interval_sec: float,
    sleep: Sleep = time.sleep,
) -> ProvisionedVM:
    for attempt in range(1, attempts + 1):
        vm = client.get_vm(vm_uuid)
        ip = first_ip(vm)
        if ip:
            return ProvisionedVM(uuid=vm_uuid, power_state=power_state(vm), ip_address=ip)
        if attempt == attempts:
            break
        logger.info("waiting for ip address vm=%s attempt=%s/%s", vm_uuid, attempt, attempts)
        sleep(interval_sec)
    raise PollTimeout("vm to obtain an IP address", attempts)


class IPWatcher:
    """Polls a VM for its first IP address on a background thread.

    The outcome is published through ``future``; ``cancel`` sets the stop
    event and joins the thread, so a timed-out wait leaves nothing running.
    """

    def __init__(
        self,
        client: PrismClient,
        vm_uuid: str,
        interval_sec: float,
        join_timeout_sec: float = 30.0,
    ):
        self.client = client
        self.vm_uuid = vm_uuid
        self.interval_sec = interval_sec
        self.join_timeout_sec = join_timeout_sec
        self.future: Future[ProvisionedVM] = Future()
        self.polls = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"ip-watcher-{vm_uuid[:8]}", daemon=True
        )

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "IPWatcher":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                vm = self.client.get_vm(self.vm_uuid)
                self.polls += 1
                ip = first_ip(vm)
                if ip:
                    if not self._stop.is_set():
                        self.future.set_result(
                            ProvisionedVM(
                                uuid=self.vm_uuid,
                                power_state=power_state(vm),
                                ip_address=ip,
                            )
                        )
                    return
                self._stop.wait(self.interval_sec)
        except Exception as exc:  # noqa: BLE001
            if not self._stop.is_set():
                self.future.set_exception(exc)

    def cancel(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.join_timeout_sec)
        self.future.cancel()

    def wait(self, timeout_sec: float) -> ProvisionedVM:
        try:
            return self.future.result(timeout=timeout_sec)
        except TimeoutError:
            logger.warning(
                "ip watcher timed out vm=%s timeout=%s polls=%s",
                self.vm_uuid,
                timeout_sec,
                self.polls,
            )
            self.cancel()
            raise PollTimeout("vm to obtain an IP address", self.polls) from None
