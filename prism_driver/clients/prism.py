from dataclasses import dataclass

import httpx

from prism_driver.clients.http import RetryPolicy, request_json
from prism_driver.config import Settings
from prism_driver.schemas import Task, TaskStatus


@dataclass
class TaskRef:
    task_uuid: str
    entity_uuid: str | None = None


def _task_uuid(payload: dict) -> str:
    context = (payload.get("status") or {}).get("execution_context") or {}
    task_uuid = context.get("task_uuid")
    if isinstance(task_uuid, list):
        task_uuid = task_uuid[0] if task_uuid else None
    if not isinstance(task_uuid, str) or not task_uuid:
        raise ValueError("response carries no task uuid")
    return task_uuid


class PrismClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        retry: RetryPolicy,
        *,
        insecure: bool = False,
        proxy_url: str | None = None,
        timeout: float = 30.0,
        page_size: int = 250,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry = retry
        self.page_size = page_size
        self.client = client or httpx.Client(
            auth=(username, password),
            verify=not insecure,
            proxy=proxy_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PrismClient":
        settings.validate_connection()
        return cls(
            base_url=settings.base_url,
            username=settings.username,
            password=settings.password,
            retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
            insecure=settings.insecure,
            proxy_url=settings.proxy_url,
            timeout=settings.request_timeout_sec,
            page_size=settings.list_page_size,
        )

    def close(self) -> None:
        self.client.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def list_entities(self, kind: str, filter_: str = "") -> list[dict]:
        entities: list[dict] = []
        offset = 0
        while True:
            body: dict = {"kind": kind, "length": self.page_size, "offset": offset}
            if filter_:
                body["filter"] = filter_
            payload = request_json(
                self.client, "POST", self._url(f"/{kind}s/list"), self.retry, json=body
            )
            page = [item for item in payload.get("entities") or [] if isinstance(item, dict)]
            entities.extend(page)
            total = (payload.get("metadata") or {}).get("total_matches")
            offset += len(page)
            if not page or not isinstance(total, int) or offset >= total:
                return entities

    def list_hosts(self, cluster_uuid: str) -> list[dict]:
        hosts = []
        for host in self.list_entities("host"):
            status = host.get("status") or {}
            cluster_ref = status.get("cluster_reference") or {}
            if cluster_ref.get("uuid") == cluster_uuid:
                hosts.append(host)
        return hosts

    def get_vm(self, vm_uuid: str) -> dict:
        return request_json(self.client, "GET", self._url(f"/vms/{vm_uuid}"), self.retry)

    def create_vm(self, intent: dict) -> TaskRef:
        payload = request_json(self.client, "POST", self._url("/vms"), self.retry, json=intent)
        entity_uuid = (payload.get("metadata") or {}).get("uuid")
        if not isinstance(entity_uuid, str) or not entity_uuid:
            raise ValueError("create vm response carries no vm uuid")
        return TaskRef(task_uuid=_task_uuid(payload), entity_uuid=entity_uuid)

    def update_vm(self, vm_uuid: str, intent: dict) -> TaskRef:
        payload = request_json(
            self.client, "PUT", self._url(f"/vms/{vm_uuid}"), self.retry, json=intent
        )
        return TaskRef(task_uuid=_task_uuid(payload), entity_uuid=vm_uuid)

    def delete_vm(self, vm_uuid: str) -> TaskRef:
        payload = request_json(self.client, "DELETE", self._url(f"/vms/{vm_uuid}"), self.retry)
        return TaskRef(task_uuid=_task_uuid(payload), entity_uuid=vm_uuid)

    def get_task(self, task_uuid: str) -> Task:
        payload = request_json(self.client, "GET", self._url(f"/tasks/{task_uuid}"), self.retry)
        raw_status = str(payload.get("status") or "").upper()
        try:
            status = TaskStatus(raw_status)
        except ValueError:
            status = TaskStatus.RUNNING
        error_detail = payload.get("error_detail")
        if not error_detail and status == TaskStatus.FAILED:
            error_detail = payload.get("progress_message")
        return Task(
            uuid=str(payload.get("uuid") or task_uuid),
            status=status,
            error_detail=error_detail if isinstance(error_detail, str) else None,
        )
