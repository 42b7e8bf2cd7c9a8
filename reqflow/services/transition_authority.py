"""
Request Lifecycle — Transition Authority

Pure decision tables for request status changes. No I/O, no session
access; every mutation path asks this module before touching a request.

Lifecycle flow:
    draft ─▶ submitted ─▶ in_review ─▶ approved ─▶ completed
                 │              │
                 ▼              ▼
              rejected ◀────────┘
                 │
                 └─▶ submitted   (resubmission)

Usage:
    from reqflow.services.transition_authority import can_user_transition

    if not can_user_transition("submitted", "in_review", GlobalRole.MANAGER):
        ...
"""

from reqflow.core.roles import ALL_ROLES, GlobalRole

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"submitted"}),
    "submitted": frozenset({"in_review", "rejected"}),
    "in_review": frozenset({"approved", "rejected"}),
    "approved": frozenset({"completed"}),
    "rejected": frozenset({"submitted"}),
    "completed": frozenset(),  # terminal
}

_REVIEWERS = frozenset({GlobalRole.ADMIN, GlobalRole.MANAGER})

# Strict allow-list: an edge missing here is forbidden to every role.
TRANSITION_ROLES: dict[str, frozenset[GlobalRole]] = {
    "draft->submitted": ALL_ROLES,
    "rejected->submitted": ALL_ROLES,
    "submitted->in_review": _REVIEWERS,
    "submitted->rejected": _REVIEWERS,
    "in_review->approved": _REVIEWERS,
    "in_review->rejected": _REVIEWERS,
    "approved->completed": _REVIEWERS,
}

# Edges a requester drives on their own request.
SUBMISSION_EDGES = frozenset({("draft", "submitted"), ("rejected", "submitted")})


def transition_key(current: str, target: str) -> str:
    return f"{current}->{target}"


def can_transition(current: str, target: str) -> bool:
    """True if ``current -> target`` is an edge of the state machine."""
    return target in VALID_TRANSITIONS.get(current, frozenset())


def can_user_transition(current: str, target: str, role) -> bool:
    """True if the edge exists and ``role`` is listed for it."""
    if not can_transition(current, target):
        return False
    allowed = TRANSITION_ROLES.get(transition_key(current, target))
    if not allowed:
        return False
    parsed = GlobalRole.parse(role)
    return parsed is not None and parsed in allowed


def explain_denial(current: str, target: str, role) -> str | None:
    """Reason code for a denied transition, or None when it is allowed."""
    if not can_transition(current, target):
        return "invalid_transition"
    if not can_user_transition(current, target, role):
        return "role_not_permitted"
    return None


def available_transitions(current: str, role) -> list[str]:
    """Targets ``role`` may move a request to from ``current``, sorted."""
    return sorted(
        target
        for target in VALID_TRANSITIONS.get(current, frozenset())
        if can_user_transition(current, target, role)
    )
