"""
Chat history for the ask endpoint.

Each session keeps its messages and the technologies mentioned so far. The
last few turns are replayed into the next prompt so follow-up questions
("and what about its job market?") resolve against earlier ones.
"""

from __future__ import annotations

import re

from devtrends.storage import ChatMessage, Conversation, ConversationRepository

# Turns replayed into the prompt (three question/answer exchanges)
CONTEXT_MESSAGES = 6

TECH_KEYWORDS: tuple[str, ...] = (
    "react", "vue", "angular", "svelte", "next", "nuxt",
    "node", "express", "nest", "fastify",
    "typescript", "javascript", "python", "rust", "go", "java",
    "postgres", "mysql", "mongodb", "redis",
    "docker", "kubernetes", "terraform",
    "aws", "azure", "gcp",
    "django", "flask", "fastapi", "rails",
    "graphql", "rest",
    "webpack", "vite", "turbopack",
    "tailwind", "sass", "css",
)  # fmt: skip

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in TECH_KEYWORDS
}


def extract_technologies(text: str) -> list[str]:
    """Known technology keywords mentioned in ``text`` (whole words, keyword order)."""
    return [keyword for keyword, pattern in _KEYWORD_PATTERNS.items() if pattern.search(text)]


def format_history(conversation: Conversation, limit: int = CONTEXT_MESSAGES) -> str:
    """Recent turns as a "Previous conversation" block; empty for a new session."""
    recent = conversation.messages[-limit:]
    if not recent:
        return ""
    turns = "\n\n".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in recent
    )
    return f"Previous conversation:\n\n{turns}"


class ConversationManager:
    """
    Session history over ``ConversationRepository``.

    Example:
        conversations = ConversationManager(ConversationRepository(db))
        history = format_history(conversations.get_or_create("session-1"))
        conversations.record_exchange("session-1", question, answer)
    """

    def __init__(self, repository: ConversationRepository):
        self.repository = repository

    def get_or_create(self, session_id: str) -> Conversation:
        """Stored history, or an empty conversation (persisted on the first exchange)."""
        return self.repository.get(session_id) or Conversation(session_id=session_id)

    def record_exchange(self, session_id: str, question: str, answer: str) -> Conversation:
        """Store a question and its answer together."""
        messages = [
            ChatMessage(role="user", content=question),
            ChatMessage(role="assistant", content=answer),
        ]
        return self.repository.append(
            session_id, messages, extract_technologies(f"{question}\n{answer}")
        )


__all__ = [
    "CONTEXT_MESSAGES",
    "TECH_KEYWORDS",
    "ConversationManager",
    "extract_technologies",
    "format_history",
]
