"""
Middleware components for the conversation pipeline.

This module provides middleware that wraps the orchestrator for
cross-cutting concerns like logging, validation, moderation and rate
limiting. A middleware may short-circuit by returning a ProcessingResult
without calling the next handler.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Any, Awaitable, Callable, Optional, List
from datetime import datetime, timedelta

from config import settings
from core.conversation.pipeline.orchestrator import ProcessingResult
from core.services.moderation import ModerationFilter, moderation_filter

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[ProcessingResult]]


class Middleware(ABC):
    """Abstract base class for pipeline middleware"""

    @abstractmethod
    async def process(self, data: Dict[str, Any], next_handler: Handler) -> ProcessingResult:
        """
        Process data and call next handler in chain.

        Args:
            data: Request data (message, conversation_id, user_id)
            next_handler: Next middleware or final handler

        Returns:
            Processing result
        """
        pass

    def sweep_idle(self, max_idle: timedelta, now: Optional[datetime] = None) -> int:
        """Drop per-conversation bookkeeping; stateless middleware keeps none"""
        return 0


class LoggingMiddleware(Middleware):
    """Logs pipeline processing steps"""

    def __init__(self, log_level: int = logging.INFO):
        self.log_level = log_level

    async def process(self, data: Dict[str, Any], next_handler: Handler) -> ProcessingResult:
        """Log before and after processing"""
        logger.log(
            self.log_level,
            "Processing message",
            extra={
                "conversation_id": data.get("conversation_id"),
                "message_preview": data.get("message", "")[:50],
            }
        )

        start_time = time.time()
        result = await next_handler(data)
        processing_time = (time.time() - start_time) * 1000

        logger.log(
            self.log_level,
            "Message processed",
            extra={
                "conversation_id": data.get("conversation_id"),
                "success": result.success,
                "intent_type": result.intent,
                "action": result.action,
                "processing_time_ms": processing_time,
            }
        )
        return result


class ValidationMiddleware(Middleware):
    """Validates input data before processing"""

    def __init__(self, max_length: Optional[int] = None):
        self.max_length = max_length or settings.MAX_MESSAGE_LENGTH

    async def process(self, data: Dict[str, Any], next_handler: Handler) -> ProcessingResult:
        """
        Validate input data.

        Raises:
            ValueError: listing every validation problem
        """
        errors = []

        if not data.get("message") or not str(data["message"]).strip():
            errors.append("Message is required")

        if not data.get("conversation_id"):
            errors.append("Conversation ID is required")

        message = data.get("message") or ""
        if len(message) > self.max_length:
            errors.append(f"Message too long (max {self.max_length} characters)")

        if errors:
            raise ValueError("; ".join(errors))

        return await next_handler(data)


class ModerationMiddleware(Middleware):
    """Stops unsafe content before it reaches the orchestrator"""

    def __init__(self, moderation: Optional[ModerationFilter] = None):
        self.moderation = moderation or moderation_filter

    async def process(self, data: Dict[str, Any], next_handler: Handler) -> ProcessingResult:
        check = self.moderation.check(data.get("message", ""))
        if check.safe:
            return await next_handler(data)

        logger.warning(
            f"Message blocked by moderation: {check.reason}",
            extra={"conversation_id": data.get("conversation_id"), "status": check.status.value}
        )
        return ProcessingResult(
            success=True,
            response=check.response,
            conversation_id=data.get("conversation_id"),
            metadata={"moderated": True, "moderation_status": check.status.value, "reason": check.reason},
        )


class RateLimitingMiddleware(Middleware):
    """Implements rate limiting per conversation"""

    def __init__(self, max_requests: Optional[int] = None, window_seconds: int = 60):
        self.max_requests = max_requests or settings.RATE_LIMIT_MESSAGES_PER_MINUTE
        self.window_seconds = window_seconds
        self.request_counts: Dict[str, List[datetime]] = {}

    async def process(self, data: Dict[str, Any], next_handler: Handler) -> ProcessingResult:
        """Check rate limit before processing"""
        conversation_id = data.get("conversation_id", "unknown")
        now = datetime.now()

        # Clean old requests
        cutoff_time = now.timestamp() - self.window_seconds
        self.request_counts[conversation_id] = [
            ts for ts in self.request_counts.get(conversation_id, [])
            if ts.timestamp() > cutoff_time
        ]

        if len(self.request_counts[conversation_id]) >= self.max_requests:
            logger.info(f"Rate limit exceeded for {conversation_id}")
            return ProcessingResult(
                success=False,
                response="You're sending messages too quickly. Please wait a moment and try again.",
                conversation_id=conversation_id,
                metadata={"rate_limited": True, "retry_after": self.window_seconds},
                error="Rate limit exceeded",
            )

        self.request_counts[conversation_id].append(now)
        return await next_handler(data)

    def sweep_idle(self, max_idle: timedelta, now: Optional[datetime] = None) -> int:
        """Forget conversations with no request inside the rate window"""
        cutoff = (now or datetime.now()).timestamp() - self.window_seconds
        stale = [cid for cid, stamps in self.request_counts.items()
                 if not any(ts.timestamp() > cutoff for ts in stamps)]
        for cid in stale:
            del self.request_counts[cid]
        return len(stale)


class MiddlewarePipeline:
    """Manages a pipeline of middleware"""

    def __init__(self):
        self.middleware: List[Middleware] = []

    def add(self, middleware: Middleware) -> 'MiddlewarePipeline':
        """Add middleware to pipeline"""
        self.middleware.append(middleware)
        return self

    def build(self, final_handler: Handler) -> Handler:
        """Build the middleware chain"""
        def create_handler(middleware: Middleware, next_handler: Handler) -> Handler:
            async def handler(data: Dict[str, Any]) -> ProcessingResult:
                return await middleware.process(data, next_handler)
            return handler

        # Build chain in reverse order
        handler = final_handler
        for mw in reversed(self.middleware):
            handler = create_handler(mw, handler)

        return handler

    def sweep_idle(self, max_idle: timedelta, now: Optional[datetime] = None) -> int:
        return sum(mw.sweep_idle(max_idle, now) for mw in self.middleware)

    def clear(self):
        """Clear all middleware"""
        self.middleware.clear()


def create_default_pipeline() -> MiddlewarePipeline:
    """Logging, validation, rate limiting and moderation, in that order"""
    return (
        MiddlewarePipeline()
        .add(LoggingMiddleware())
        .add(ValidationMiddleware())
        .add(RateLimitingMiddleware())
        .add(ModerationMiddleware())
    )
