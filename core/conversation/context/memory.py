"""
Short-term conversation memory.

Append-only record of recent turns per conversation. Turns are evidence for
retrieval and classification, never the source of truth for flow state.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

from models.schemas import ConversationTurn

logger = logging.getLogger(__name__)


class ConversationMemory:
    """In-process turn log keyed by conversation id"""

    def __init__(self, max_turns_per_conversation: int = 100):
        self.max_turns = max_turns_per_conversation
        self._turns: Dict[str, Deque[ConversationTurn]] = {}
        self._lock = threading.Lock()

    def add_turn(self, conversation_id: str, role: str, content: str,
                 intent: Optional[str] = None) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content, intent=intent)
        with self._lock:
            if conversation_id not in self._turns:
                self._turns[conversation_id] = deque(maxlen=self.max_turns)
            self._turns[conversation_id].append(turn)
        return turn

    def get_recent(self, conversation_id: str, limit: int = 20) -> List[ConversationTurn]:
        """Most recent turns, oldest first"""
        with self._lock:
            turns = list(self._turns.get(conversation_id, ()))
        return turns[-limit:] if limit else turns

    def last_turn(self, conversation_id: str, role: str,
                  skip_latest: bool = False) -> Optional[ConversationTurn]:
        turns = self.get_recent(conversation_id, limit=0)
        if skip_latest and turns:
            turns = turns[:-1]
        for turn in reversed(turns):
            if turn.role == role:
                return turn
        return None

    def last_assistant_turn(self, conversation_id: str) -> Optional[ConversationTurn]:
        return self.last_turn(conversation_id, "assistant")

    def build_context_string(self, conversation_id: str, limit: int = 20) -> str:
        lines = []
        for turn in self.get_recent(conversation_id, limit):
            speaker = "User" if turn.role == "user" else "Assistant"
            lines.append(f"{speaker}: {turn.content}")
        return "\n".join(lines)

    def clear(self, conversation_id: str) -> None:
        with self._lock:
            self._turns.pop(conversation_id, None)

    def sweep_idle(self, max_idle: timedelta, now: Optional[datetime] = None) -> int:
        """
        Drop conversations whose latest turn is older than max_idle.

        Returns:
            Number of conversations removed
        """
        cutoff = (now or datetime.utcnow()) - max_idle
        with self._lock:
            idle = [cid for cid, turns in self._turns.items() if not turns or turns[-1].timestamp < cutoff]
            for cid in idle:
                del self._turns[cid]
        if idle:
            logger.info(f"Swept turn history for {len(idle)} idle conversations")
        return len(idle)

    def conversation_count(self) -> int:
        return len(self._turns)
