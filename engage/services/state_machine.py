from enum import Enum


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    WAITING_HUMAN = "waiting_human"
    RESOLVED = "resolved"


OPEN_STATUSES = (ConversationStatus.ACTIVE.value, ConversationStatus.WAITING_HUMAN.value)

VALID_TRANSITIONS = {
    ConversationStatus.ACTIVE: [ConversationStatus.WAITING_HUMAN, ConversationStatus.RESOLVED],
    ConversationStatus.WAITING_HUMAN: [ConversationStatus.ACTIVE, ConversationStatus.RESOLVED],
    ConversationStatus.RESOLVED: [ConversationStatus.ACTIVE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ConversationStatus, to_status: ConversationStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def is_open(status: str) -> bool:
    return status in OPEN_STATUSES


def can_transition(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def request_human(current: ConversationStatus) -> ConversationStatus:
    """Bot hands the conversation over; it stays open, waiting for an agent."""
    return transition(current, ConversationStatus.WAITING_HUMAN)


def return_to_bot(current: ConversationStatus) -> ConversationStatus:
    if current != ConversationStatus.WAITING_HUMAN:
        raise InvalidTransitionError(current, ConversationStatus.ACTIVE)
    return transition(current, ConversationStatus.ACTIVE)


def resolve(current: ConversationStatus) -> ConversationStatus:
    return transition(current, ConversationStatus.RESOLVED)


def reopen(current: ConversationStatus) -> ConversationStatus:
    """Only a resolved conversation can be reopened."""
    if current != ConversationStatus.RESOLVED:
        raise InvalidTransitionError(current, ConversationStatus.ACTIVE)
    return transition(current, ConversationStatus.ACTIVE)
