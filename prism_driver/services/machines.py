import logging
from collections.abc import Callable
from pathlib import Path

from prism_driver.config import get_settings
from prism_driver.db import session_scope
from prism_driver.metrics import metrics
from prism_driver.models import Machine, MachineState
from prism_driver.repositories import (
    cas_machine_state,
    get_machine,
    now_utc,
    write_event,
)
from prism_driver.schemas import DOCKER_PORT, MachineConfig, MachineRead, MachineStatus
from prism_driver.services.lifecycle import LifecycleError, LifecycleManager
from prism_driver.services.provisioning import Provisioner
from prism_driver.ssh import ensure_public_key
from prism_driver.state_machine import can_transition


logger = logging.getLogger(__name__)

# create returns these rows unchanged; a CREATING row is owned by the request polling it.
IN_PLACE_STATES = {MachineState.CREATING.value, MachineState.RUNNING.value}


class MachineNotFound(LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"machine {name} not found")


class InvalidTransition(RuntimeError):
    def __init__(self, name: str, current: str, target: str):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"machine {name} cannot move from {current} to {target}")


def docker_url(ip_address: str | None) -> str | None:
    if not ip_address:
        return None
    return f"tcp://{ip_address}:{DOCKER_PORT}"


def key_path(name: str, key_dir: str | None = None) -> Path:
    root = Path(key_dir or get_settings().ssh_key_dir).resolve()
    path = (root / name / "id_rsa").resolve()
    if path.parent.parent != root:
        raise ValueError(f"machine name {name!r} escapes ssh key directory {root}")
    return path


def to_read(machine: Machine) -> MachineRead:
    return MachineRead(
        name=machine.name,
        vm_uuid=machine.vm_uuid,
        ip_address=machine.ip_address,
        state=machine.state,
        cluster=machine.cluster,
        url=docker_url(machine.ip_address),
        last_error=machine.last_error,
        created_at=machine.created_at,
        updated_at=machine.updated_at,
    )


def _load(session, name: str) -> Machine:
    machine = get_machine(session, name)
    if machine is None:
        raise MachineNotFound(name)
    return machine


def create_machine(
    config: MachineConfig, provisioner: Provisioner, key_dir: str | None = None
) -> Machine:
    name = config.name
    with session_scope() as session:
        machine = get_machine(session, name)
        if machine is not None and machine.state in IN_PLACE_STATES:
            return machine
        if machine is not None and machine.state == MachineState.REMOVING.value:
            raise InvalidTransition(name, machine.state, MachineState.CREATING.value)
        if machine is None:
            machine = Machine(
                name=name,
                state=MachineState.CREATING.value,
                cluster=config.cluster,
                config_json=config.model_dump_json(),
            )
            session.add(machine)
        else:
            if machine.vm_uuid or not can_transition(
                machine.state, MachineState.CREATING.value
            ):
                raise InvalidTransition(name, machine.state, MachineState.CREATING.value)
            machine.state = MachineState.CREATING.value
            machine.cluster = config.cluster
            machine.config_json = config.model_dump_json()
            machine.ip_address = None
            machine.last_error = None
            machine.updated_at = now_utc()
        session.flush()
        write_event(session, "machine.creating", {"cluster": config.cluster}, name)

    try:
        public_key = ensure_public_key(key_path(name, key_dir), comment=name)
        vm = provisioner.provision(config, public_key)
    except Exception as exc:
        vm_uuid = getattr(exc, "vm_uuid", None)
        if getattr(exc, "rolled_back", False):
            vm_uuid = None
        with session_scope() as session:
            machine = _load(session, name)
            cas_machine_state(
                session,
                machine,
                MachineState.CREATING.value,
                MachineState.FAILED.value,
                last_error=str(exc),
            )
            machine.vm_uuid = vm_uuid or None
            write_event(
                session, "machine.failed", {"error": str(exc), "vm_uuid": vm_uuid}, name
            )
        metrics.operation("create", ok=False)
        logger.error("machine creation failed name=%s: %s", name, exc)
        raise

    with session_scope() as session:
        machine = _load(session, name)
        cas_machine_state(
            session, machine, MachineState.CREATING.value, MachineState.RUNNING.value
        )
        machine.vm_uuid = vm.uuid
        machine.ip_address = vm.ip_address
        write_event(
            session,
            "machine.running",
            {"vm_uuid": vm.uuid, "ip_address": vm.ip_address},
            name,
        )
    metrics.operation("create", ok=True)
    logger.info("machine running name=%s url=%s", name, docker_url(vm.ip_address))
    return machine


def _power_operation(
    name: str,
    operation: str,
    run: Callable[[str], None],
    target: MachineState,
) -> Machine:
    with session_scope() as session:
        machine = _load(session, name)
        if not machine.vm_uuid or not can_transition(machine.state, target.value):
            raise InvalidTransition(name, machine.state, target.value)
        vm_uuid = machine.vm_uuid

    try:
        run(vm_uuid)
    except LifecycleError as exc:
        with session_scope() as session:
            machine = _load(session, name)
            machine.last_error = str(exc)
            machine.updated_at = now_utc()
            write_event(session, f"machine.{operation}_failed", {"error": exc.detail}, name)
        metrics.operation(operation, ok=False)
        raise

    with session_scope() as session:
        machine = _load(session, name)
        cas_machine_state(session, machine, machine.state, target.value)
        write_event(session, f"machine.{operation}", {"vm_uuid": vm_uuid}, name)
    metrics.operation(operation, ok=True)
    return machine


def start_machine(name: str, lifecycle: LifecycleManager) -> Machine:
    return _power_operation(name, "start", lifecycle.start, MachineState.RUNNING)


def stop_machine(name: str, lifecycle: LifecycleManager) -> Machine:
    return _power_operation(name, "stop", lifecycle.stop, MachineState.STOPPED)


def kill_machine(name: str, lifecycle: LifecycleManager) -> Machine:
    return _power_operation(name, "kill", lifecycle.kill, MachineState.STOPPED)


def restart_machine(name: str, lifecycle: LifecycleManager) -> Machine:
    return _power_operation(name, "restart", lifecycle.restart, MachineState.RUNNING)


def remove_machine(name: str, lifecycle: LifecycleManager) -> Machine:
    with session_scope() as session:
        machine = _load(session, name)
        if machine.state == MachineState.REMOVED.value:
            return machine
        if not can_transition(machine.state, MachineState.REMOVING.value):
            raise InvalidTransition(name, machine.state, MachineState.REMOVING.value)
        cas_machine_state(session, machine, machine.state, MachineState.REMOVING.value)
        vm_uuid = machine.vm_uuid
        write_event(session, "machine.removing", {"vm_uuid": vm_uuid}, name)

    try:
        lifecycle.remove(vm_uuid)
    except LifecycleError as exc:
        with session_scope() as session:
            machine = _load(session, name)
            cas_machine_state(
                session,
                machine,
                MachineState.REMOVING.value,
                MachineState.FAILED.value,
                last_error=str(exc),
            )
            write_event(session, "machine.remove_failed", {"error": exc.detail}, name)
        metrics.operation("remove", ok=False)
        raise

    with session_scope() as session:
        machine = _load(session, name)
        cas_machine_state(
            session, machine, MachineState.REMOVING.value, MachineState.REMOVED.value
        )
        machine.vm_uuid = None
        machine.ip_address = None
        write_event(session, "machine.removed", {"vm_uuid": vm_uuid}, name)
    metrics.operation("remove", ok=True)
    logger.info("machine removed name=%s", name)
    return machine


def get_machine_state(name: str, lifecycle: LifecycleManager) -> MachineStatus:
    with session_scope() as session:
        machine = _load(session, name)
        state = machine.state
        vm_uuid = machine.vm_uuid
    if state == MachineState.FAILED.value and not vm_uuid:
        return MachineStatus.ERROR
    if not vm_uuid:
        return MachineStatus.UNKNOWN
    return lifecycle.get_state(vm_uuid)
