from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from prism_driver.clients.http import RequestFailure
from prism_driver.clients.prism import PrismClient
from prism_driver.config import get_settings
from prism_driver.db import SessionLocal
from prism_driver.metrics import metrics, series
from prism_driver.repositories import count_machines_by_state, get_machine, list_machines
from prism_driver.schemas import MachineConfig, MachineRead, MachineStateRead
from prism_driver.services import machines
from prism_driver.services.cloud_init import CloudInitSyntaxError
from prism_driver.services.lifecycle import LifecycleError, LifecycleManager
from prism_driver.services.polling import PollTimeout
from prism_driver.services.provisioning import (
    Provisioner,
    ProvisioningError,
    ProvisioningTimeoutError,
)
from prism_driver.services.resolver import ResolutionError


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def _prism_client() -> PrismClient:
    return PrismClient.from_settings(get_settings())


def get_prism_client() -> PrismClient:
    try:
        return _prism_client()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=f"prism connection: {exc}") from exc


def get_provisioner(client: PrismClient = Depends(get_prism_client)) -> Provisioner:
    return Provisioner.from_settings(client, get_settings())


def get_lifecycle(client: PrismClient = Depends(get_prism_client)) -> LifecycleManager:
    return LifecycleManager.from_settings(client, get_settings())


def close_prism_client() -> None:
    if _prism_client.cache_info().currsize:
        _prism_client().close()
        _prism_client.cache_clear()


DRIVER_ERRORS = (
    machines.MachineNotFound,
    machines.InvalidTransition,
    ResolutionError,
    CloudInitSyntaxError,
    ProvisioningError,
    LifecycleError,
    RequestFailure,
)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, machines.MachineNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, machines.InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ResolutionError, CloudInitSyntaxError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ProvisioningTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, LifecycleError) and isinstance(exc.__cause__, PollTimeout):
        return HTTPException(status_code=504, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)) -> dict[str, int]:
    snapshot = metrics.snapshot()
    for state, count in count_machines_by_state(db).items():
        snapshot[series("machines", state=state)] = count
    return snapshot


@router.post("/v1/machines", response_model=MachineRead)
def create_machine(
    config: MachineConfig, provisioner: Provisioner = Depends(get_provisioner)
) -> MachineRead:
    try:
        machine = machines.create_machine(config, provisioner)
    except DRIVER_ERRORS as exc:
        raise _http_error(exc) from exc
    return machines.to_read(machine)


@router.get("/v1/machines", response_model=list[MachineRead])
def get_machines(
    state: str | None = Query(default=None), db: Session = Depends(get_db)
) -> list[MachineRead]:
    return [machines.to_read(m) for m in list_machines(db, state=state)]


@router.get("/v1/machines/{name}", response_model=MachineRead)
def get_machine_detail(name: str, db: Session = Depends(get_db)) -> MachineRead:
    machine = get_machine(db, name)
    if machine is None:
        raise HTTPException(status_code=404, detail=f"machine {name} not found")
    return machines.to_read(machine)


@router.get("/v1/machines/{name}/state", response_model=MachineStateRead)
def get_machine_state(
    name: str, lifecycle: LifecycleManager = Depends(get_lifecycle)
) -> MachineStateRead:
    try:
        state = machines.get_machine_state(name, lifecycle)
    except DRIVER_ERRORS as exc:
        raise _http_error(exc) from exc
    return MachineStateRead(name=name, state=state)


OPERATIONS = {
    "start": machines.start_machine,
    "stop": machines.stop_machine,
    "restart": machines.restart_machine,
    "kill": machines.kill_machine,
}


@router.post("/v1/machines/{name}/{operation}", response_model=MachineRead)
def power_operation(
    name: str, operation: str, lifecycle: LifecycleManager = Depends(get_lifecycle)
) -> MachineRead:
    run = OPERATIONS.get(operation)
    if run is None:
        raise HTTPException(status_code=404, detail=f"unknown operation {operation}")
    try:
        machine = run(name, lifecycle)
    except DRIVER_ERRORS as exc:
        raise _http_error(exc) from exc
    return machines.to_read(machine)


@router.delete("/v1/machines/{name}", response_model=MachineRead)
def remove_machine(
    name: str, lifecycle: LifecycleManager = Depends(get_lifecycle)
) -> MachineRead:
    try:
        machine = machines.remove_machine(name, lifecycle)
    except DRIVER_ERRORS as exc:
        raise _http_error(exc) from exc
    return machines.to_read(machine)
