"""Content categories for agent-style generation requests."""

import re
from enum import Enum
from typing import Optional, Sequence, Tuple

from pydantic import BaseModel


class ContentType(str, Enum):
    """Kinds of content a free-form request can ask for."""

    EMAIL = "email"
    DOCUMENT = "document"
    MEETING = "meeting"
    LIST = "list"
    NOTE = "note"
    GENERAL = "general"


# Checked in order; the first category with a matching keyword wins
CONTENT_KEYWORDS: Sequence[Tuple[ContentType, Tuple[str, ...]]] = (
    (ContentType.EMAIL, ("email", "e-mail", "mail", "reply to", "dear")),
    (ContentType.MEETING, ("meeting", "agenda", "minutes", "standup", "stand-up")),
    (ContentType.LIST, ("list", "checklist", "bullet points", "to-do", "todo", "steps")),
    (ContentType.DOCUMENT, ("document", "report", "proposal", "article", "essay", "memo")),
    (ContentType.NOTE, ("note", "notes", "remind", "reminder", "jot")),
)

INSTRUCTIONS = {
    ContentType.EMAIL: (
        "Write a clear, professional email based on the request. "
        "Include a subject line, greeting, body and sign-off."
    ),
    ContentType.DOCUMENT: (
        "Write a well-structured document based on the request, "
        "with a title and short paragraphs."
    ),
    ContentType.MEETING: (
        "Write a meeting agenda based on the request, "
        "listing topics with time allocations and owners where known."
    ),
    ContentType.LIST: "Write a concise bulleted list based on the request.",
    ContentType.NOTE: "Write a short, clear note based on the request.",
    ContentType.GENERAL: "Respond helpfully and concisely to the request.",
}


def _has_keyword(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


def classify_content_type(text: str) -> ContentType:
    """Guess the content category of a request from its keywords."""
    lowered = text.lower()
    for content_type, keywords in CONTENT_KEYWORDS:
        if any(_has_keyword(lowered, keyword) for keyword in keywords):
            return content_type
    return ContentType.GENERAL


def instruction_for(content_type: ContentType) -> str:
    return INSTRUCTIONS[content_type]


class ContentResult(BaseModel):
    """Outcome of a content-generation request.

    On failure ``fallback_content`` carries the original request so the
    caller always has something to paste.
    """

    success: bool
    content_type: Optional[ContentType] = None
    generated_content: Optional[str] = None
    error: Optional[str] = None
    fallback_content: Optional[str] = None

    @classmethod
    def ok(cls, content_type: ContentType, generated_content: str) -> "ContentResult":
        return cls(success=True, content_type=content_type, generated_content=generated_content)

    @classmethod
    def failure(cls, error: str, fallback_content: str) -> "ContentResult":
        return cls(success=False, error=error, fallback_content=fallback_content)
