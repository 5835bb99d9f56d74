import copy
import uuid
from threading import Lock
from urllib.parse import unquote

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from fake_prism.config import get_settings


API_PREFIX = "/api/nutanix/v3"

app = FastAPI(title="Fake Prism Central")

_lock = Lock()
_entities: dict[str, list[dict]] = {}
_vms: dict[str, dict] = {}
_tasks: dict[str, dict] = {}
_faults: dict[str, str | None] = {"create": None, "power": None}
_requests: list[tuple[str, str]] = []
_next_ip = [get_settings().first_ip_suffix]


def reset() -> None:
    with _lock:
        _entities.clear()
        _vms.clear()
        _tasks.clear()
        _requests.clear()
        _faults.update({"create": None, "power": None})
        _next_ip[0] = get_settings().first_ip_suffix


def requests_seen() -> list[tuple[str, str]]:
    with _lock:
        return list(_requests)


def vm_records() -> dict[str, dict]:
    with _lock:
        return copy.deepcopy(_vms)


def fail_next(operation: str, detail: str) -> None:
    with _lock:
        _faults[operation] = detail


def _add(kind: str, entity: dict) -> str:
    with _lock:
        _entities.setdefault(kind, []).append(entity)
    return entity["metadata"]["uuid"]


def add_cluster(name: str, cluster_uuid: str | None = None) -> str:
    cluster_uuid = cluster_uuid or str(uuid.uuid4())
    return _add(
        "cluster",
        {"metadata": {"kind": "cluster", "uuid": cluster_uuid}, "status": {"name": name}},
    )


def add_subnet(name: str, subnet_type: str, cluster_uuid: str | None = None) -> str:
    spec: dict = {"name": name, "resources": {"subnet_type": subnet_type}}
    if cluster_uuid:
        spec["cluster_reference"] = {"kind": "cluster", "uuid": cluster_uuid}
    return _add(
        "subnet", {"metadata": {"kind": "subnet", "uuid": str(uuid.uuid4())}, "spec": spec}
    )


def add_image(name: str, image_type: str = "DISK_IMAGE") -> str:
    return _add(
        "image",
        {
            "metadata": {"kind": "image", "uuid": str(uuid.uuid4())},
            "spec": {"name": name},
            "status": {"name": name, "resources": {"image_type": image_type}},
        },
    )


def add_project(name: str) -> str:
    return _add(
        "project",
        {"metadata": {"kind": "project", "uuid": str(uuid.uuid4())}, "spec": {"name": name}},
    )


def add_host(cluster_uuid: str, gpus: list[dict] | None = None) -> str:
    return _add(
        "host",
        {
            "metadata": {"kind": "host", "uuid": str(uuid.uuid4())},
            "status": {
                "cluster_reference": {"kind": "cluster", "uuid": cluster_uuid},
                "resources": {"gpu_list": gpus or []},
            },
        },
    )


def seed_demo() -> dict[str, str]:
    cluster_uuid = add_cluster("C1")
    return {
        "cluster": cluster_uuid,
        "subnet": add_subnet("N1", "VLAN", cluster_uuid),
        "image": add_image("golden-image"),
        "project": add_project("default"),
        "host": add_host(
            cluster_uuid,
            [
                {
                    "name": "Tesla T4",
                    "device_id": 7864,
                    "mode": "PASSTHROUGH_COMPUTE",
                    "vendor": "NVIDIA",
                    "status": "UNUSED",
                }
            ],
        ),
    }


def _entity_name(entity: dict) -> str | None:
    return (entity.get("spec") or {}).get("name") or (entity.get("status") or {}).get("name")


def _filter_names(filter_: str) -> set[str] | None:
    if not filter_:
        return None
    names = set()
    for clause in filter_.split(","):
        key, _, value = clause.partition("==")
        if key == "name":
            names.add(unquote(value))
    return names


def _not_found(vm_uuid: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "state": "ERROR",
            "code": 404,
            "message_list": [
                {"reason": "ENTITY_NOT_FOUND", "message": f"VM {vm_uuid} does not exist"}
            ],
        },
    )


def _new_task(operation: str, vm_uuid: str, error_detail: str | None = None) -> str:
    task_uuid = str(uuid.uuid4())
    _tasks[task_uuid] = {
        "uuid": task_uuid,
        "operation": operation,
        "vm_uuid": vm_uuid,
        "polls": 0,
        "error_detail": error_detail,
    }
    return task_uuid


def _accepted(vm_uuid: str, task_uuid: str) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": {"state": "PENDING", "execution_context": {"task_uuid": task_uuid}},
            "metadata": {"kind": "vm", "uuid": vm_uuid},
        },
    )


def _assign_ip() -> str:
    suffix = _next_ip[0]
    _next_ip[0] += 1
    return f"{get_settings().ip_prefix}{suffix}"


@app.on_event("startup")
def startup() -> None:
    reset()
    if get_settings().seed_demo:
        seed_demo()


@app.get("/healthz")
def healthz() -> dict:
    with _lock:
        return {"status": "ok", "vms": len(_vms), "tasks": len(_tasks)}


@app.post(API_PREFIX + "/{collection}/list")
def list_entities(collection: str, body: dict | None = Body(default=None)) -> dict:
    body = body or {}
    kind = collection.removesuffix("s")
    names = _filter_names(str(body.get("filter") or ""))
    offset = int(body.get("offset") or 0)
    length = int(body.get("length") or 20)
    with _lock:
        _requests.append(("POST", f"/{collection}/list"))
        items = list(_entities.get(kind, []))
    if names is not None:
        items = [item for item in items if _entity_name(item) in names]
    return {
        "api_version": "3.1",
        "metadata": {
            "kind": kind,
            "total_matches": len(items),
            "offset": offset,
            "length": length,
        },
        "entities": items[offset : offset + length],
    }


@app.post(API_PREFIX + "/vms")
def create_vm(intent: dict = Body(...)) -> JSONResponse:
    vm_uuid = str(uuid.uuid4())
    with _lock:
        _requests.append(("POST", "/vms"))
        resources = (intent.get("spec") or {}).get("resources") or {}
        _vms[vm_uuid] = {
            "api_version": intent.get("api_version", "3.1"),
            "metadata": {**(intent.get("metadata") or {}), "uuid": vm_uuid, "spec_version": 0},
            "spec": copy.deepcopy(intent.get("spec") or {}),
            "ready": False,
            "ip_polls": get_settings().ip_polls,
            "ip": None,
            "power_state": resources.get("power_state") or "ON",
        }
        task_uuid = _new_task("create", vm_uuid, _faults["create"])
        _faults["create"] = None
    return _accepted(vm_uuid, task_uuid)


@app.get(API_PREFIX + "/vms/{vm_uuid}")
def get_vm(vm_uuid: str) -> JSONResponse:
    with _lock:
        _requests.append(("GET", f"/vms/{vm_uuid}"))
        vm = _vms.get(vm_uuid)
        if vm is None:
            return _not_found(vm_uuid)
        if vm["ready"] and vm["ip"] is None:
            if vm["ip_polls"] > 0:
                vm["ip_polls"] -= 1
            else:
                vm["ip"] = _assign_ip()
        nics = []
        if vm["ip"]:
            nics.append({"ip_endpoint_list": [{"ip": vm["ip"], "type": "ASSIGNED"}]})
        content = {
            "api_version": vm["api_version"],
            "metadata": copy.deepcopy(vm["metadata"]),
            "spec": copy.deepcopy(vm["spec"]),
            "status": {
                "state": "COMPLETE" if vm["ready"] else "PENDING",
                "resources": {"power_state": vm["power_state"], "nic_list": nics},
            },
        }
    return JSONResponse(content=content)


@app.put(API_PREFIX + "/vms/{vm_uuid}")
def update_vm(vm_uuid: str, intent: dict = Body(...)) -> JSONResponse:
    with _lock:
        _requests.append(("PUT", f"/vms/{vm_uuid}"))
        vm = _vms.get(vm_uuid)
        if vm is None:
            return _not_found(vm_uuid)
        if "status" in intent:
            return JSONResponse(
                status_code=422,
                content={"message_list": [{"message": "status is read-only"}]},
            )
        vm["spec"] = copy.deepcopy(intent.get("spec") or {})
        vm["metadata"]["spec_version"] = int(vm["metadata"].get("spec_version") or 0) + 1
        task_uuid = _new_task("power", vm_uuid, _faults["power"])
        _faults["power"] = None
    return _accepted(vm_uuid, task_uuid)


@app.delete(API_PREFIX + "/vms/{vm_uuid}")
def delete_vm(vm_uuid: str) -> JSONResponse:
    with _lock:
        _requests.append(("DELETE", f"/vms/{vm_uuid}"))
        if vm_uuid not in _vms:
            return _not_found(vm_uuid)
        del _vms[vm_uuid]
        task_uuid = _new_task("delete", vm_uuid)
    return _accepted(vm_uuid, task_uuid)


def _complete(task: dict) -> None:
    vm = _vms.get(task["vm_uuid"])
    if vm is not None and task["operation"] == "create":
        vm["ready"] = True
    elif vm is not None and task["operation"] == "power":
        power = ((vm["spec"].get("resources") or {}).get("power_state")) or vm["power_state"]
        vm["power_state"] = power


@app.get(API_PREFIX + "/tasks/{task_uuid}")
def get_task(task_uuid: str) -> JSONResponse:
    with _lock:
        _requests.append(("GET", f"/tasks/{task_uuid}"))
        task = _tasks.get(task_uuid)
        if task is None:
            return JSONResponse(
                status_code=404,
                content={"message_list": [{"message": f"task {task_uuid} not found"}]},
            )
        task["polls"] += 1
        if task["polls"] < get_settings().task_polls_to_complete:
            status = "RUNNING"
        elif task["error_detail"]:
            status = "FAILED"
        else:
            if task["polls"] == get_settings().task_polls_to_complete:
                _complete(task)
            status = "SUCCEEDED"
        content = {
            "uuid": task_uuid,
            "status": status,
            "operation_type": task["operation"],
            "percentage_complete": 100 if status in {"SUCCEEDED", "FAILED"} else 50,
            "error_detail": task["error_detail"] if status == "FAILED" else "",
        }
    return JSONResponse(content=content)
