"""Automation Matcher: pick at most one enabled rule for an inbound event.

Evaluation order, first match wins:

1. new contact        -> ``new_contact`` rules
2. new conversation   -> ``first_message`` rules
3. otherwise, or when step 1/2 found nothing -> ``keyword`` rules; a rule matches
   when any keyword is a case-insensitive substring of the inbound text.

Within one step, rules are tried oldest first (created_at, then id), so the
choice is deterministic when several rules of the same kind match.
Scheduled, anniversary and ticket-status rules are time driven and never
match an inbound event.
"""

from typing import Iterable, List, Optional

from pydantic import ValidationError

from engage.logging_config import get_logger
from engage.models import AutomationRule, Contact
from engage.schemas.automation import (
    AnniversaryTrigger,
    FirstMessageTrigger,
    KeywordTrigger,
    NewContactTrigger,
    ScheduledTrigger,
    TicketStatusTrigger,
    TriggerConfig,
)
from engage.services.events import InboundEvent

logger = get_logger("automation_matcher")

_TIME_DRIVEN = (ScheduledTrigger, TicketStatusTrigger, AnniversaryTrigger)


def _ordered(rules: Iterable[AutomationRule]) -> List[tuple[AutomationRule, TriggerConfig]]:
    parsed = []
    for rule in sorted(rules, key=lambda r: (r.created_at is None, r.created_at, str(r.id))):
        if not rule.is_enabled:
            continue
        try:
            parsed.append((rule, rule.trigger))
        except ValidationError as e:
            logger.warning(
                "Skipping rule with invalid trigger config",
                extra={"context": {"rule_id": str(rule.id), "error": str(e)}},
            )
    return parsed


def keyword_matches(trigger: KeywordTrigger, text: str) -> bool:
    normalized = (text or "").casefold()
    if not normalized:
        return False
    return any(keyword.casefold() in normalized for keyword in trigger.keywords)


def match(
    event: InboundEvent,
    contact: Contact,
    is_new_contact: bool,
    is_new_conversation: bool,
    enabled_rules: Iterable[AutomationRule],
) -> Optional[AutomationRule]:
    rules = _ordered(enabled_rules)

    if is_new_contact:
        lifecycle_kind = NewContactTrigger
    elif is_new_conversation:
        lifecycle_kind = FirstMessageTrigger
    else:
        lifecycle_kind = None

    if lifecycle_kind is not None:
        for rule, trigger in rules:
            if isinstance(trigger, lifecycle_kind):
                return rule

    for rule, trigger in rules:
        if isinstance(trigger, KeywordTrigger) and keyword_matches(trigger, event.text):
            return rule
        if not isinstance(trigger, (KeywordTrigger, NewContactTrigger, FirstMessageTrigger) + _TIME_DRIVEN):
            # New trigger variants must be classified here.
            raise TypeError(f"Unhandled trigger type: {type(trigger).__name__}")

    logger.debug(
        "No automation rule matched",
        extra={"context": {"contact_id": str(contact.id), "event_id": event.external_message_id}},
    )
    return None
