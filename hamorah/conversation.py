"""
Conversation Models for Hamorah

ConversationTurn is the unit of chat history. The inference engine reads a
bounded window of turns through the ConversationStore interface and returns
new turns for the caller to append; it never writes to the store itself.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MessageRole(str, Enum):
    """Role of a message sender."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConversationTurn:
    """A single message in a conversation."""
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    related_references: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    diagnostics_json: str | None = None  # Debug info for assistant turns

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    @property
    def is_assistant(self) -> bool:
        return self.role == MessageRole.ASSISTANT

    def to_api_format(self) -> dict[str, str]:
        """Role-tagged message record for chat-completions APIs."""
        return {
            'role': 'user' if self.role == MessageRole.USER else 'assistant',
            'content': self.content,
        }


class ConversationStore(ABC):
    """Interface for the conversation store collaborator."""

    @abstractmethod
    def get_messages(self, conversation_id: str) -> list[ConversationTurn]:
        """Return the conversation's turns, oldest first."""

    @abstractmethod
    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        related_references: list[str] | None = None,
    ) -> ConversationTurn:
        """Create, store, and return a new turn."""


class InMemoryConversationStore(ConversationStore):
    """Process-local conversation store, used by tests and headless hosts."""

    def __init__(self):
        self._conversations: dict[str, list[ConversationTurn]] = {}
        self._lock = threading.Lock()

    def get_messages(self, conversation_id: str) -> list[ConversationTurn]:
        with self._lock:
            return list(self._conversations.get(conversation_id, []))

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        related_references: list[str] | None = None,
    ) -> ConversationTurn:
        turn = ConversationTurn(
            role=MessageRole(role),
            content=content,
            related_references=tuple(related_references or ()),
        )
        with self._lock:
            self._conversations.setdefault(conversation_id, []).append(turn)
        return turn

    def add_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        """Store a turn built elsewhere (e.g. returned by ProviderManager.respond)."""
        with self._lock:
            self._conversations.setdefault(conversation_id, []).append(turn)
