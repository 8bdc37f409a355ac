"""
SQLite storage shared by all DevTrends workers.

Exports:
    Database: connection and transaction management
    Repositories: one per table
    Models: frozen row dataclasses
"""

from __future__ import annotations

from .db import Database
from .models import (
    AnomalyEvent,
    ChatMessage,
    Conversation,
    DigestRecord,
    FeedbackRecord,
    InsightRecord,
    PromptVersion,
    TelemetryEvent,
    TelemetryEventKind,
    Technology,
)
from .repository import (
    AnomalyRepository,
    ConfigRepository,
    ConversationRepository,
    DigestRepository,
    FeedbackRepository,
    InsightRepository,
    PromptRepository,
    RateLimitRepository,
    TechnologyRepository,
    TelemetryRepository,
)

__all__ = [
    "Database",
    "TelemetryEventKind",
    "TelemetryEvent",
    "PromptVersion",
    "FeedbackRecord",
    "InsightRecord",
    "Technology",
    "ChatMessage",
    "Conversation",
    "DigestRecord",
    "AnomalyEvent",
    "RateLimitRepository",
    "TelemetryRepository",
    "PromptRepository",
    "ConfigRepository",
    "FeedbackRepository",
    "InsightRepository",
    "TechnologyRepository",
    "ConversationRepository",
    "DigestRepository",
    "AnomalyRepository",
]
