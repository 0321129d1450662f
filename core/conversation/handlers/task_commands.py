"""
Handlers that execute task actions through the tool executor.

They run only once a command has every required slot; the orchestrator
guarantees that through slot filling or confirmation.
"""

import logging
from typing import Optional

from models.schemas import ActionKind
from core.conversation.handlers.base import BaseHandler, HandlerRequest, HandlerResponse
from core.services.task_tools import DEFAULT_DESCRIPTION, DEFAULT_PRIORITY, ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


class TaskToolHandler(BaseHandler):
    """Shared plumbing for handlers backed by a ToolExecutor"""

    def __init__(self, tool_executor: ToolExecutor):
        super().__init__()
        self.tools = tool_executor

    def _respond(self, request: HandlerRequest, result: ToolResult, tool: str) -> HandlerResponse:
        response = HandlerResponse(
            success=result.success,
            message=result.message,
            metadata={"tool": tool, "tool_data": result.data},
            actions=[{"type": "tool_call", "tool": tool, "success": result.success}],
            error=None if result.success else result.message,
        )
        self.log_handling(request, response)
        return response


class CreateTaskHandler(TaskToolHandler):
    actions = [ActionKind.CREATE_TASK]

    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        slots = request.slots
        result = self.tools.create_task(
            title=slots.get("title", ""),
            description=slots.get("description") or DEFAULT_DESCRIPTION,
            priority=slots.get("priority") or DEFAULT_PRIORITY,
            deadline=slots.get("deadline"),
            project_id=slots.get("project_id"),
            user_id=request.user_id,
        )
        return self._respond(request, result, "create_task")


class UpdateTaskHandler(TaskToolHandler):
    actions = [ActionKind.UPDATE_TASK]

    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        slots = request.slots
        result = self.tools.update_task(
            task_id=str(slots.get("task_id")),
            field_name=slots.get("field"),
            value=slots.get("value"),
            user_id=request.user_id,
        )
        return self._respond(request, result, "update_task")


class DeleteTaskHandler(TaskToolHandler):
    actions = [ActionKind.DELETE_TASK]

    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        result = self.tools.delete_task(task_id=str(request.slots.get("task_id")), user_id=request.user_id)
        return self._respond(request, result, "delete_task")


class TaskQueryHandler(TaskToolHandler):
    """Direct lookups: task listing and statistics"""

    actions = [ActionKind.GET_TASKS, ActionKind.GET_STATISTICS]

    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        if request.action == ActionKind.GET_STATISTICS:
            result = self.tools.get_statistics(user_id=request.user_id)
            response = self._respond(request, result, "get_statistics")
        else:
            result = self.tools.get_tasks(
                user_id=request.user_id,
                status=request.slots.get("status"),
                priority=request.slots.get("priority"),
            )
            response = self._respond(request, result, "get_tasks")

        if request.pending_question:
            response.message = self._with_reminder(response.message, request.pending_question)
        return response

    @staticmethod
    def _with_reminder(message: str, pending_question: Optional[str]) -> str:
        return f"{message}\n\nBack to your task: {pending_question}"
