"""Durable, append-only record of conversation turns"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)


class AuditLog(ABC):
    """Write-only sink for completed turns"""

    @abstractmethod
    def record_turn(self, conversation_id: str, user_id: Optional[str], user_message: str,
                    assistant_response: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        pass


class LoggingAuditLog(AuditLog):
    """Emits each turn as a structured log record"""

    def __init__(self, logger_name: str = "taskflow.audit"):
        self._logger = logging.getLogger(logger_name)

    def record_turn(self, conversation_id, user_id, user_message, assistant_response, metadata=None):
        self._logger.info(
            "Conversation turn",
            extra={
                "conversation_id": conversation_id,
                "user_id": user_id,
                "intent": (metadata or {}).get("intent"),
                "action": (metadata or {}).get("action"),
                "message_length": len(user_message),
            },
        )


class JsonlAuditLog(AuditLog):
    """Appends each turn as one JSON line to a file"""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record_turn(self, conversation_id, user_id, user_message, assistant_response, metadata=None):
        record = {
            "timestamp": datetime.utcnow().isoformat(),
            "conversation_id": conversation_id,
            "user_id": user_id,
            "user_message": user_message,
            "assistant_response": assistant_response,
            "metadata": metadata or {},
        }
        line = json.dumps(record, default=str, ensure_ascii=False)
        try:
            with self._lock, self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error(f"Failed to append audit record for {conversation_id}: {e}")


def create_audit_log() -> AuditLog:
    if settings.AUDIT_LOG_PATH:
        return JsonlAuditLog(settings.AUDIT_LOG_PATH)
    return LoggingAuditLog()
