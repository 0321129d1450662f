"""
Shared pytest fixtures for the task assistant.

The project root is put on sys.path so `config`, `core`, `models` and `api`
import the same way they do under uvicorn. Environment defaults are set
before anything imports `config`, which keeps every test on the offline
stack: no completion API key, hashing embeddings, the in-memory vector
index and the in-memory task store.
"""

import os
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("GEMINI_API_KEY", "")
os.environ.setdefault("EMBEDDING_PROVIDER", "hashing")
os.environ.setdefault("VECTOR_INDEX", "memory")
os.environ.setdefault("TASK_BACKEND_URL", "")
os.environ.setdefault("AUDIT_LOG_PATH", "")
os.environ.setdefault("ENVIRONMENT", "dev")

import pytest

from core.conversation.context.memory import ConversationMemory
from core.conversation.handlers.conversation import ConversationHandler
from core.conversation.orchestration.state_store import ConversationStateStore
from core.conversation.pipeline.orchestrator import ConversationOrchestrator
from core.conversation.understanding.intent_classifier import IntentClassifier
from core.conversation.understanding.slot_extractor import SlotExtractor
from core.services.audit_log import LoggingAuditLog
from core.services.gemini_service import GeminiService
from core.services.task_tools import InMemoryTaskToolExecutor

# Wednesday, so weekday arithmetic in deadline tests is predictable
FIXED_NOW = datetime(2025, 9, 24, 10, 30)


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def extractor(fixed_clock):
    return SlotExtractor(clock=fixed_clock)


@pytest.fixture
def state_store():
    return ConversationStateStore()


@pytest.fixture
def offline_service():
    """A completion service with no API key, i.e. permanently unavailable"""
    return GeminiService(api_key="")


@pytest.fixture
def tool_executor():
    return InMemoryTaskToolExecutor()


@pytest.fixture
def orchestrator(state_store, tool_executor, offline_service):
    """
    Orchestrator wired for the deterministic tier only.

    The classifier has no model-assisted strategy and the conversation
    handler's completion service is unavailable, so every reply is
    reproducible.
    """
    return ConversationOrchestrator(
        state_store=state_store,
        memory=ConversationMemory(),
        classifier=IntentClassifier(primary=None),
        tool_executor=tool_executor,
        audit_log=LoggingAuditLog(),
        conversation_handler=ConversationHandler(service=offline_service),
    )
