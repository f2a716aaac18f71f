"""
Fold a contact's message events into one touch per step.

Each touch becomes a single EmailActivity row keyed by
(campaign, contact, step).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from outreach_sync.connectors.base import PlatformEvent
from outreach_sync.services.reply_classification import classify_with_sentiment


@dataclass
class Touch:
    step_number: int
    sent: bool = False
    sent_at: Optional[datetime] = None
    subject: Optional[str] = None
    external_message_id: Optional[str] = None
    opened: bool = False
    open_count: int = 0
    first_opened_at: Optional[datetime] = None
    clicked: bool = False
    click_count: int = 0
    first_clicked_at: Optional[datetime] = None
    replied: bool = False
    replied_at: Optional[datetime] = None
    reply_text: Optional[str] = None
    reply_category: Optional[str] = None
    reply_sentiment: Optional[str] = None
    bounced: bool = False
    bounced_at: Optional[datetime] = None
    unsubscribed: bool = False
    messages: List[dict] = field(default_factory=list)

    def activity_fields(self) -> dict:
        return {
            "sent": self.sent,
            "sent_at": self.sent_at,
            "subject": self.subject,
            "external_message_id": self.external_message_id,
            "opened": self.opened,
            "open_count": self.open_count,
            "first_opened_at": self.first_opened_at,
            "clicked": self.clicked,
            "click_count": self.click_count,
            "first_clicked_at": self.first_clicked_at,
            "replied": self.replied,
            "replied_at": self.replied_at,
            "reply_text": self.reply_text,
            "reply_category": self.reply_category,
            "reply_sentiment": self.reply_sentiment,
            "bounced": self.bounced,
            "bounced_at": self.bounced_at,
            "unsubscribed": self.unsubscribed,
        }


def _earliest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return min(current, candidate)


def _step_for_unnumbered(touches: Dict[int, Touch], occurred_at: Optional[datetime]) -> int:
    """Latest step sent at or before the event, else the latest step, else 1"""
    sent_steps = [t for t in touches.values() if t.sent]
    if occurred_at is not None:
        before = [t for t in sent_steps if t.sent_at is None or t.sent_at <= occurred_at]
        if before:
            return max(t.step_number for t in before)
    if sent_steps:
        return max(t.step_number for t in sent_steps)
    return 1


def build_touches(events: Iterable[PlatformEvent]) -> Dict[int, Touch]:
    """
    Fold events into touches keyed by step number.

    Opens, clicks and replies imply the step was sent even when the platform
    omitted the send event. The first reply per step is kept and classified.
    """
    touches: Dict[int, Touch] = {}

    # Sends first so unnumbered follow-up events can find their step
    ordered = sorted(
        events,
        key=lambda e: (e.event_type != "sent", e.occurred_at or datetime.min),
    )

    for event in ordered:
        step = event.step_number or _step_for_unnumbered(touches, event.occurred_at)
        touch = touches.setdefault(step, Touch(step_number=step))
        at = event.occurred_at

        if event.event_type == "sent":
            touch.sent = True
            touch.sent_at = _earliest(touch.sent_at, at)
            touch.subject = touch.subject or event.subject
            touch.external_message_id = touch.external_message_id or event.message_id
        elif event.event_type == "opened":
            touch.sent = True
            touch.opened = True
            touch.open_count += 1
            touch.first_opened_at = _earliest(touch.first_opened_at, at)
        elif event.event_type == "clicked":
            touch.sent = True
            touch.clicked = True
            touch.click_count += 1
            touch.first_clicked_at = _earliest(touch.first_clicked_at, at)
        elif event.event_type == "replied":
            touch.sent = True
            if not touch.replied or (at and touch.replied_at and at < touch.replied_at):
                touch.replied_at = at
                touch.reply_text = event.body
                touch.reply_category, touch.reply_sentiment = classify_with_sentiment(
                    event.body, event.category
                )
            touch.replied = True
            touch.messages.append({
                "subject": event.subject,
                "body": event.body,
                "at": at.isoformat() if at else None,
            })
        elif event.event_type == "bounced":
            touch.sent = True
            touch.bounced = True
            touch.bounced_at = _earliest(touch.bounced_at, at)
        elif event.event_type == "unsubscribed":
            touch.unsubscribed = True

    return touches
