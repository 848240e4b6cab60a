"""
Inquiry status state machine.

New -> Contacted happens automatically when a shelter opens a new inquiry.
New|Contacted -> Approved|Rejected are explicit shelter actions.
New|Contacted -> Cancelled is an explicit applicant action.
Approved, Rejected and Cancelled are terminal.
"""

from inquiry_sync.schemas import InquiryStatus, Role


TERMINAL_STATUSES = frozenset({
    InquiryStatus.APPROVED,
    InquiryStatus.REJECTED,
    InquiryStatus.CANCELLED,
})

TRANSITIONS: dict[InquiryStatus, frozenset] = {
    InquiryStatus.NEW: frozenset({
        InquiryStatus.CONTACTED,
        InquiryStatus.APPROVED,
        InquiryStatus.REJECTED,
        InquiryStatus.CANCELLED,
    }),
    InquiryStatus.CONTACTED: frozenset({
        InquiryStatus.APPROVED,
        InquiryStatus.REJECTED,
        InquiryStatus.CANCELLED,
    }),
    InquiryStatus.APPROVED: frozenset(),
    InquiryStatus.REJECTED: frozenset(),
    InquiryStatus.CANCELLED: frozenset(),
}

# Explicit (user-initiated) targets per role. Contacted is reached only through
# acknowledgement, never offered as an action.
ROLE_ACTIONS: dict[Role, tuple] = {
    Role.SHELTER: (InquiryStatus.APPROVED, InquiryStatus.REJECTED),
    Role.APPLICANT: (InquiryStatus.CANCELLED,),
}


class InvalidStatusTransition(ValueError):
    def __init__(self, current: InquiryStatus, target: InquiryStatus):
        self.current = current
        self.target = target
        super().__init__(f"cannot move inquiry from {current.value} to {target.value}")


def is_terminal(status: InquiryStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: InquiryStatus, target: InquiryStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: InquiryStatus, target: InquiryStatus) -> None:
    """Raise InvalidStatusTransition unless the table allows current -> target."""
    if not can_transition(current, target):
        raise InvalidStatusTransition(current, target)


def allowed_transitions(current: InquiryStatus, role: Role) -> list[InquiryStatus]:
    """Status changes the given role may offer as UI actions from `current`."""
    if is_terminal(current):
        return []
    return [target for target in ROLE_ACTIONS[role] if can_transition(current, target)]
