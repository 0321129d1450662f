"""
Conversation state store.

Keyed, expiring record of an in-progress multi-turn task. A state exists
only while a flow is incomplete: it is cleared the moment the flow
completes or is cancelled, and swept once it has been idle longer than the
configured threshold.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from models.schemas import FlowType

logger = logging.getLogger(__name__)

INITIAL_STEP = "INIT"

# Companion sweep over other per-conversation data: (max_idle, now) -> removed count
IdleSweep = Callable[[timedelta, Optional[datetime]], int]

# Slots that must be present (and non-blank) before a flow can execute
REQUIRED_SLOTS: Dict[FlowType, List[str]] = {
    FlowType.CREATE_TASK: ["title"],
    FlowType.UPDATE_TASK: ["task_id", "field", "value"],
    FlowType.DELETE_TASK: ["task_id"],
    FlowType.LIST_TASKS: [],
}


@dataclass
class StoreConfig:
    """Lifecycle settings for the state store"""
    max_idle: timedelta = timedelta(hours=1)
    sweep_interval: timedelta = timedelta(minutes=30)


@dataclass
class ConversationState:
    """In-progress flow for one conversation"""
    conversation_id: str
    flow_type: FlowType
    current_step: str = INITIAL_STEP
    collected_slots: Dict[str, Any] = field(default_factory=dict)
    waiting_for: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    step_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: datetime = field(default_factory=datetime.utcnow)

    def touch(self) -> None:
        self.last_updated_at = datetime.utcnow()

    def has_slot(self, key: str) -> bool:
        """A slot is filled once its key is present, even with a None value ("no deadline")"""
        return key in self.collected_slots

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "flow_type": self.flow_type.value,
            "current_step": self.current_step,
            "collected_slots": dict(self.collected_slots),
            "waiting_for": self.waiting_for,
            "metadata": dict(self.metadata),
            "step_count": self.step_count,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }


class ConversationStateStore:
    """
    Thread-safe in-memory map of conversation id to ConversationState.

    Mutation is safe across different conversation ids. Callers serialize
    turns within one conversation, so there is at most one writer per key.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self._states: Dict[str, ConversationState] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._companion_sweeps: List[IdleSweep] = []

    def get(self, conversation_id: str) -> Optional[ConversationState]:
        with self._lock:
            return self._states.get(conversation_id)

    def create_or_update(self, conversation_id: str, flow_type: FlowType,
                         step: str = INITIAL_STEP) -> ConversationState:
        """
        Start a flow or move an existing one to a new step.

        Switching to a different flow type discards the slots collected for
        the previous flow.
        """
        with self._lock:
            state = self._states.get(conversation_id)
            if state is None or state.flow_type != flow_type:
                if state is not None:
                    logger.info(
                        f"Replacing {state.flow_type.value} flow with {flow_type.value} for {conversation_id}"
                    )
                state = ConversationState(conversation_id=conversation_id, flow_type=flow_type, current_step=step)
                self._states[conversation_id] = state
            else:
                state.current_step = step
                state.step_count += 1
                state.touch()
            return state

    def update_slot(self, conversation_id: str, key: str, value: Any) -> bool:
        with self._lock:
            state = self._states.get(conversation_id)
            if state is None:
                logger.warning(f"update_slot({key}) on missing state {conversation_id}")
                return False
            state.collected_slots[key] = value
            state.touch()
            return True

    def get_slot(self, conversation_id: str, key: str, default: Any = None) -> Any:
        with self._lock:
            state = self._states.get(conversation_id)
            if state is None:
                return default
            return state.collected_slots.get(key, default)

    def set_waiting_for(self, conversation_id: str, slot: Optional[str]) -> None:
        with self._lock:
            state = self._states.get(conversation_id)
            if state is not None:
                state.waiting_for = slot
                state.touch()

    def update_metadata(self, conversation_id: str, **values: Any) -> None:
        with self._lock:
            state = self._states.get(conversation_id)
            if state is not None:
                state.metadata.update(values)
                state.touch()

    def is_complete(self, conversation_id: str, flow_type: FlowType) -> bool:
        """Check the flow-specific required-slot rule for a conversation"""
        with self._lock:
            state = self._states.get(conversation_id)
            if state is None or state.flow_type != flow_type:
                return False
            return self.slots_satisfy(flow_type, state.collected_slots)

    @staticmethod
    def slots_satisfy(flow_type: FlowType, slots: Dict[str, Any]) -> bool:
        required = REQUIRED_SLOTS.get(flow_type)
        if required is None:
            return False
        for key in required:
            value = slots.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                return False
        return True

    def clear(self, conversation_id: str) -> bool:
        with self._lock:
            removed = self._states.pop(conversation_id, None)
        if removed is not None:
            logger.debug(f"Cleared {removed.flow_type.value} state for {conversation_id}")
        return removed is not None

    def add_companion_sweep(self, sweep: IdleSweep) -> None:
        """Run another idle sweep whenever this store sweeps"""
        self._companion_sweeps.append(sweep)

    def sweep_expired(self, max_idle: Optional[timedelta] = None,
                      now: Optional[datetime] = None) -> int:
        """
        Remove states idle for longer than max_idle.

        Registered companion sweeps run with the same threshold afterwards.

        Returns:
            Number of states removed
        """
        max_idle = max_idle or self.config.max_idle
        cutoff = (now or datetime.utcnow()) - max_idle
        with self._lock:
            expired = [cid for cid, s in self._states.items() if s.last_updated_at < cutoff]
            for cid in expired:
                del self._states[cid]
        if expired:
            logger.info(f"Swept {len(expired)} idle conversation states")
        for sweep in self._companion_sweeps:
            sweep(max_idle, now)
        return len(expired)

    def active_count(self) -> int:
        return len(self._states)

    def start_background_sweep(self, interval: Optional[timedelta] = None) -> None:
        """Start background sweep task"""
        if not self._sweep_task:
            self._sweep_task = asyncio.create_task(self._periodic_sweep(interval or self.config.sweep_interval))

    def stop_background_sweep(self) -> None:
        """Stop background sweep task"""
        if self._sweep_task:
            self._sweep_task.cancel()
            self._sweep_task = None

    async def _periodic_sweep(self, interval: timedelta) -> None:
        """Periodically remove idle states"""
        while True:
            try:
                await asyncio.sleep(interval.total_seconds())
                self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic sweep: {str(e)}")
