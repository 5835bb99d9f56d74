from prism_driver.models import MachineState


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    MachineState.CREATING.value: {MachineState.RUNNING.value, MachineState.FAILED.value},
    MachineState.RUNNING.value: {
        MachineState.STOPPED.value,
        MachineState.REMOVING.value,
        MachineState.FAILED.value,
    },
    MachineState.STOPPED.value: {
        MachineState.RUNNING.value,
        MachineState.REMOVING.value,
        MachineState.FAILED.value,
    },
    MachineState.FAILED.value: {
        MachineState.CREATING.value,
        MachineState.REMOVING.value,
    },
    MachineState.REMOVING.value: {
        MachineState.REMOVED.value,
        MachineState.FAILED.value,
    },
    MachineState.REMOVED.value: {MachineState.CREATING.value},
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
