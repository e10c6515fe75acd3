"""Attach experiment attribution to outgoing events."""

from collections.abc import Iterable, Mapping

from src.ab.assignment import AssignmentCoordinator
from src.collector.schemas import Event


def tag_event(event: Event, assignments: Mapping[str, str]) -> Event:
    """Return a copy of the event carrying the given assignments.

    Assignments already on the event win, so an event tagged at the edge
    is never re-attributed.
    """
    if not assignments:
        return event
    return event.model_copy(update={"experiments": {**assignments, **event.experiments}})


def tag_events(events: Iterable[Event], coordinator: AssignmentCoordinator) -> list[Event]:
    """Tag a batch of events, reading each visitor's assignments once."""
    cache: dict[str, dict[str, str]] = {}
    tagged = []
    for event in events:
        if event.user_id not in cache:
            cache[event.user_id] = coordinator.list_assignments(event.user_id)
        tagged.append(tag_event(event, cache[event.user_id]))
    return tagged
