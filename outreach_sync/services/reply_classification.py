"""
Rule-based reply classification

Categorizes reply text by signal phrases checked in priority order.
A category the platform already assigned wins over the text rules.
"""
import re
from typing import Dict, List, Optional, Tuple

POSITIVE_CATEGORIES = ("meeting_request", "interested")

SIGNAL_PHRASES: Dict[str, List[str]] = {
    "meeting_request": [
        "let's schedule", "schedule a call", "are you free", "set up a meeting",
        "can we do a demo", "when are you available", "book a time", "calendar",
        "let's chat", "quick call", "15 minutes", "30 minutes",
    ],
    "interested": [
        "sounds interesting", "tell me more", "what does this cost", "how does this work",
        "send me some information", "i'd like to learn more", "very interesting",
        "this caught my attention", "intrigued", "curious",
    ],
    "question": [
        "who are you", "how did you get my email", "what company is this",
        "what exactly do you do", "is this spam", "what is this about",
        "can you explain", "i don't understand",
    ],
    "referral": [
        "you should talk to", "i'm not the right person", "let me connect you",
        "i've forwarded this", "cc'ing", "try reaching out to",
        "the right person would be",
    ],
    "not_now": [
        "not a priority right now", "reach out next quarter", "just signed with",
        "not in the budget", "maybe in 6 months", "in the middle of",
        "try again later", "not the right time", "busy right now",
    ],
    "not_interested": [
        "not interested", "this isn't for us", "we don't need", "no thanks",
        "we're all set", "don't contact me again", "please remove me",
        "not a fit", "pass",
    ],
    "unsubscribe": [
        "unsubscribe", "remove me from your list", "stop emailing",
        "take me off", "don't email me", "opt out", "remove from list",
    ],
    "out_of_office": [
        "out of the office", "on vacation", "limited access",
        "away from my desk", "i'll respond when i return", "automatic reply",
        "currently out", "back on",
    ],
    "negative_hostile": [
        "stop", "spam", "reported", "lawsuit", "legal action", "harassing",
        "never contact", "blocked",
    ],
}

# Order matters: earlier categories win when several match
PRIORITY_ORDER = (
    "meeting_request",
    "unsubscribe",
    "out_of_office",
    "referral",
    "interested",
    "question",
    "not_now",
    "not_interested",
    "negative_hostile",
)

# Platform-assigned lead categories
PLATFORM_CATEGORIES = {
    "meeting request": "meeting_request",
    "meeting booked": "meeting_request",
    "appointment set": "meeting_request",
    "interested": "interested",
    "positive_reply": "interested",
    "information request": "question",
    "question": "question",
    "wrong person": "referral",
    "referral": "referral",
    "not now": "not_now",
    "not interested": "not_interested",
    "not_interested": "not_interested",
    "negative_reply": "not_interested",
    "do not contact": "unsubscribe",
    "do not call": "unsubscribe",
    "unsubscribed": "unsubscribe",
    "out of office": "out_of_office",
    "out_of_office": "out_of_office",
}

SENTIMENTS = {
    "meeting_request": "positive",
    "interested": "positive",
    "referral": "neutral",
    "question": "neutral",
    "out_of_office": "neutral",
    "neutral": "neutral",
    "not_now": "negative",
    "not_interested": "negative",
    "unsubscribe": "negative",
    "negative_hostile": "negative",
}

_PATTERNS = {
    category: re.compile(
        r"(?<!\w)(?:" + "|".join(re.escape(phrase) for phrase in phrases) + r")(?!\w)"
    )
    for category, phrases in SIGNAL_PHRASES.items()
}


def map_platform_category(category: Optional[str]) -> Optional[str]:
    if not category:
        return None
    return PLATFORM_CATEGORIES.get(category.strip().lower())


def classify_reply(text: Optional[str], platform_category: Optional[str] = None) -> str:
    """Return the reply category for a reply body"""
    mapped = map_platform_category(platform_category)
    if mapped:
        return mapped

    if not text:
        return "neutral"

    lowered = text.lower()
    for category in PRIORITY_ORDER:
        if _PATTERNS[category].search(lowered):
            return category

    # Short replies with a question mark are almost always questions
    if "?" in lowered and len(lowered) < 200:
        return "question"
    return "neutral"


def classify_with_sentiment(text: Optional[str], platform_category: Optional[str] = None) -> Tuple[str, str]:
    category = classify_reply(text, platform_category)
    return category, SENTIMENTS.get(category, "neutral")


def is_positive(category: Optional[str]) -> bool:
    return category in POSITIVE_CATEGORIES
