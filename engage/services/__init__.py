from engage.services.contact_service import normalize_address, resolve_contact
from engage.services.conversation_service import (
    ConversationActionError,
    apply_action,
    hand_over_to_human,
    open_or_reuse,
)
from engage.services.delivery_status import DeliveryStatus, apply_status
from engage.services.message_service import persist_inbound, save_outbound_message
from engage.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    can_transition,
    transition,
)
