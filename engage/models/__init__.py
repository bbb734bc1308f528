from engage.models.automation_job import AutomationJob
from engage.models.automation_rule import AutomationRule, MessageTemplate
from engage.models.contact import Contact
from engage.models.conversation import Conversation
from engage.models.message import Message
from engage.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Contact",
    "Conversation",
    "Message",
    "MessageTemplate",
    "AutomationRule",
    "AutomationJob",
]
