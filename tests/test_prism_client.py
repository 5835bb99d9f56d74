import json

import httpx
import pytest

from prism_driver.clients.http import RequestFailure, RetryPolicy
from prism_driver.clients.prism import PrismClient
from prism_driver.config import Settings
from prism_driver.schemas import TaskStatus


BASE_URL = "https://prism.test:9440/api/nutanix/v3"


def _client(handler) -> PrismClient:
    return PrismClient(
        BASE_URL,
        "admin",
        "secret",
        RetryPolicy(),
        page_size=2,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_list_entities_paginates_until_total_matches():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        everything = [{"metadata": {"uuid": f"u{i}"}} for i in range(5)]
        offset = body["offset"]
        return httpx.Response(
            200,
            json={
                "metadata": {"total_matches": 5},
                "entities": everything[offset : offset + body["length"]],
            },
        )

    entities = _client(handler).list_entities("cluster", "name==C1")
    assert [e["metadata"]["uuid"] for e in entities] == ["u0", "u1", "u2", "u3", "u4"]
    assert [b["offset"] for b in bodies] == [0, 2, 4]
    assert all(b["filter"] == "name==C1" and b["kind"] == "cluster" for b in bodies)


def test_list_entities_posts_to_kind_list_path():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"metadata": {"total_matches": 0}, "entities": []})

    assert _client(handler).list_entities("subnet") == []
    assert paths == ["/api/nutanix/v3/subnets/list"]


def test_list_hosts_keeps_cluster_members():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "metadata": {"total_matches": 2},
                "entities": [
                    {"status": {"cluster_reference": {"uuid": "c1"}}},
                    {"status": {"cluster_reference": {"uuid": "c2"}}},
                ],
            },
        )

    hosts = _client(handler).list_hosts("c1")
    assert len(hosts) == 1


def test_create_vm_returns_task_and_entity():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path.endswith("/vms")
        return httpx.Response(
            202,
            json={
                "metadata": {"uuid": "vm-1"},
                "status": {"execution_context": {"task_uuid": "task-1"}},
            },
        )

    ref = _client(handler).create_vm({"spec": {}})
    assert ref.task_uuid == "task-1"
    assert ref.entity_uuid == "vm-1"


def test_create_vm_without_task_uuid_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, json={"metadata": {"uuid": "vm-1"}})

    with pytest.raises(ValueError):
        _client(handler).create_vm({"spec": {}})


def test_get_task_maps_status_and_falls_back_to_progress_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"uuid": "task-1", "status": "FAILED", "progress_message": "disk error"},
        )

    task = _client(handler).get_task("task-1")
    assert task.status == TaskStatus.FAILED
    assert task.error_detail == "disk error"
    assert task.failed


def test_get_task_unknown_status_is_running():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"uuid": "task-1", "status": "DRAFT"})

    assert _client(handler).get_task("task-1").status == TaskStatus.RUNNING


def test_delete_vm_not_found_keeps_status_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message_list": [{"reason": "ENTITY_NOT_FOUND"}]})

    with pytest.raises(RequestFailure) as excinfo:
        _client(handler).delete_vm("vm-1")
    assert excinfo.value.status_code == 404


def test_from_settings_requires_credentials():
    settings = Settings(endpoint="prism.test", username="", password="secret")
    with pytest.raises(ValueError, match="username cannot be empty"):
        PrismClient.from_settings(settings)


def test_settings_base_url():
    settings = Settings(endpoint="prism.test", port=9440)
    assert settings.base_url == BASE_URL
