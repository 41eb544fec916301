# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""File and directory reservations held by the local agent."""

from typing import TYPE_CHECKING

from agent_mesh.models import FeedEventType, Reservation, ValidationResult, iso_from_epoch

if TYPE_CHECKING:
    from agent_mesh.session import MeshSession

# Patterns that cover (nearly) the whole tree
BROAD_PATTERNS = {".", "/", "./", "..", "../", ""}


def validate_reservation(pattern: str) -> ValidationResult:
    """Reject empty patterns; warn on patterns broad enough to block everyone."""
    if not pattern or not pattern.strip():
        return ValidationResult(valid=False)

    stripped = pattern.rstrip("/")
    if pattern in BROAD_PATTERNS or stripped in BROAD_PATTERNS:
        return ValidationResult(
            valid=True,
            warning=f'"{pattern}" is very broad and will block most file operations for other agents.',
        )

    segments = [s for s in stripped.split("/") if s]
    if len(segments) == 1 and pattern.endswith("/"):
        return ValidationResult(
            valid=True,
            warning=(
                f'"{pattern}" covers an entire top-level directory. '
                "Consider reserving a more specific path."
            ),
        )

    return ValidationResult(valid=True)


def add_reservation(session: "MeshSession", pattern: str, reason: str | None = None) -> ValidationResult:
    """Reserve ``pattern``. Re-reserving the same pattern replaces the old entry."""
    validation = validate_reservation(pattern)
    if not validation.valid:
        return validation

    state = session.state
    state.reservations = [r for r in state.reservations if r.pattern != pattern]
    state.reservations.append(
        Reservation(pattern=pattern, since=iso_from_epoch(session.clock()), reason=reason)
    )
    session.registry.update_registration(state)
    session.feed.log_event(state.agent_name, FeedEventType.RESERVE, pattern, reason)
    return validation


def remove_reservation(session: "MeshSession", pattern: str) -> bool:
    """Release ``pattern``. Returns False if it was not reserved."""
    state = session.state
    remaining = [r for r in state.reservations if r.pattern != pattern]
    if len(remaining) == len(state.reservations):
        return False
    state.reservations = remaining
    session.registry.update_registration(state)
    session.feed.log_event(state.agent_name, FeedEventType.RELEASE, pattern)
    return True


def remove_all_reservations(session: "MeshSession") -> list[str]:
    """Release everything. Returns the released patterns."""
    state = session.state
    released = [r.pattern for r in state.reservations]
    state.reservations = []
    session.registry.update_registration(state)
    for pattern in released:
        session.feed.log_event(state.agent_name, FeedEventType.RELEASE, pattern)
    return released
