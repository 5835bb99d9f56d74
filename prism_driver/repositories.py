import json
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from prism_driver.models import Event, Machine
from prism_driver.state_machine import can_transition


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, machine_name: str | None = None
) -> None:
    session.add(
        Event(
            machine_name=machine_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def get_machine(session: Session, name: str) -> Machine | None:
    return session.get(Machine, name)


def list_machines(session: Session, state: str | None = None) -> list[Machine]:
    query = select(Machine)
    if state:
        query = query.where(Machine.state == state)
    return list(session.scalars(query.order_by(Machine.created_at.desc())))


def list_events(session: Session, machine_name: str) -> list[Event]:
    query = select(Event).where(Event.machine_name == machine_name)
    return list(session.scalars(query.order_by(Event.id.asc())))


def cas_machine_state(
    session: Session,
    machine: Machine,
    expected: str,
    target: str,
    last_error: str | None = None,
) -> bool:
    if machine.state != expected:
        return False
    if not can_transition(expected, target):
        return False
    machine.state = target
    machine.updated_at = now_utc()
    if last_error:
        machine.last_error = last_error
    return True


def count_machines_by_state(session: Session) -> dict[str, int]:
    query = select(Machine.state, func.count()).group_by(Machine.state)
    return {state: count for state, count in session.execute(query)}
