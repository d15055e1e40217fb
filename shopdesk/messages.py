"""Inbound contract: the classifier's output for one chat message.

The parser/intent classifier upstream produces
``{parsedMessage: {clientId, cleanContent, tokens, keywords},
intents: [{intent, confidence}], bestIntent, timestamp}``.  These models
accept that camelCase payload (or snake_case field names) and expose the
few derived values the strategies need.  The text itself is never
re-parsed here.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IntentScore(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intent: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ParsedMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    client_id: str | None = Field(default=None, alias="clientId")
    clean_content: str = Field(default="", alias="cleanContent")
    tokens: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class ClassifiedMessage(BaseModel):
    """One classified message, as handed to the dispatcher."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    parsed_message: ParsedMessage = Field(default_factory=ParsedMessage, alias="parsedMessage")
    intents: list[IntentScore] = Field(default_factory=list)
    best_intent: IntentScore | None = Field(default=None, alias="bestIntent")
    timestamp: float | None = None
    # Transport envelope; carries clientId when the parser did not
    original_message: dict[str, Any] | None = Field(default=None, alias="originalMessage")

    @property
    def client_id(self) -> str | None:
        if self.parsed_message.client_id:
            return self.parsed_message.client_id
        if self.original_message:
            cid = self.original_message.get("clientId") or self.original_message.get("client_id")
            return str(cid) if cid else None
        return None

    @property
    def content(self) -> str:
        return self.parsed_message.clean_content

    @property
    def keywords(self) -> list[str]:
        return self.parsed_message.keywords

    @property
    def top_intent(self) -> IntentScore | None:
        """Highest-ranked intent: ``bestIntent`` if given, else the first of ``intents``."""
        if self.best_intent is not None:
            return self.best_intent
        return self.intents[0] if self.intents else None

    @property
    def top_intent_name(self) -> str:
        top = self.top_intent
        return top.intent if top is not None else "unknown"

    def effective_timestamp(self) -> float:
        """Message time in epoch seconds; millisecond stamps are normalised."""
        if self.timestamp is None:
            return time.time()
        ts = float(self.timestamp)
        # JS-style millisecond epochs from the transport
        if ts > 1e11:
            ts /= 1000.0
        return ts

    def summary(self) -> dict[str, Any]:
        """Compact form stored in session history."""
        top = self.top_intent
        return {
            "client_id": self.client_id,
            "content": self.content,
            "keywords": list(self.keywords),
            "intent": top.model_dump() if top is not None else None,
        }
