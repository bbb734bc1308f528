from engage.schemas.conversation import ConversationActionRequest, ConversationActionResponse
from engage.schemas.webhook import WebhookResponse, WhatsAppWebhookPayload

__all__ = [
    "ConversationActionRequest",
    "ConversationActionResponse",
    "WebhookResponse",
    "WhatsAppWebhookPayload",
]
