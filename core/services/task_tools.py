"""
Task CRUD tools.

The orchestrator executes actions through `ToolExecutor` only after a
command is fully slot-filled. The in-memory executor backs local runs and
tests; the REST executor talks to the task backend.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from config import settings

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Task created via AI"
DEFAULT_PRIORITY = "MEDIUM"
UPDATABLE_FIELDS = ("title", "description", "priority", "deadline", "status")
VALID_STATUSES = ("TODO", "IN_PROGRESS", "DONE")


@dataclass
class ToolResult:
    """Outcome of a tool call"""
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


class ToolExecutor(ABC):
    """Task backend operations available to the assistant"""

    @abstractmethod
    def create_task(self, title: str, description: Optional[str] = None, priority: Optional[str] = None,
                    deadline: Optional[str] = None, project_id: Optional[str] = None,
                    user_id: Optional[str] = None) -> ToolResult:
        pass

    @abstractmethod
    def get_tasks(self, user_id: Optional[str] = None, status: Optional[str] = None,
                  priority: Optional[str] = None, limit: int = 20) -> ToolResult:
        pass

    @abstractmethod
    def get_statistics(self, user_id: Optional[str] = None) -> ToolResult:
        pass

    @abstractmethod
    def update_task(self, task_id: str, field_name: str, value: Any,
                    user_id: Optional[str] = None) -> ToolResult:
        pass

    @abstractmethod
    def delete_task(self, task_id: str, user_id: Optional[str] = None) -> ToolResult:
        pass


def _format_task_line(task: Dict[str, Any]) -> str:
    deadline = task.get("deadline") or "no deadline"
    return f"#{task['id']} {task['title']} [{task.get('priority', DEFAULT_PRIORITY)}, {task.get('status', 'TODO')}, {deadline}]"


class InMemoryTaskToolExecutor(ToolExecutor):
    """Process-local task store"""

    def __init__(self):
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _find(self, task_id: str, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        key = str(task_id).lstrip("#")
        task = self._tasks.get(key)
        if task is None:
            # Allow lookup by exact title
            for candidate in self._tasks.values():
                if candidate["title"].lower() == key.lower():
                    task = candidate
                    break
        if task is not None and user_id and task.get("user_id") not in (None, user_id):
            return None
        return task

    def create_task(self, title, description=None, priority=None, deadline=None,
                    project_id=None, user_id=None) -> ToolResult:
        if not title or not str(title).strip():
            return ToolResult(False, "A task needs a title.")
        with self._lock:
            task_id = str(next(self._ids))
            task = {
                "id": task_id,
                "title": str(title).strip(),
                "description": description or DEFAULT_DESCRIPTION,
                "priority": (priority or DEFAULT_PRIORITY).upper(),
                "deadline": deadline,
                "status": "TODO",
                "project_id": project_id,
                "user_id": user_id,
                "created_at": datetime.utcnow().isoformat(),
            }
            self._tasks[task_id] = task
        logger.info(f"Created task #{task_id}: {task['title']}")
        return ToolResult(True, f"Created task #{task_id} \"{task['title']}\".", {"task": dict(task)})

    def get_tasks(self, user_id=None, status=None, priority=None, limit=20) -> ToolResult:
        with self._lock:
            tasks = [
                dict(t) for t in self._tasks.values()
                if (not user_id or t.get("user_id") in (None, user_id))
                and (not status or t["status"] == status.upper())
                and (not priority or t["priority"] == priority.upper())
            ]
        tasks = tasks[:limit]
        if not tasks:
            return ToolResult(True, "You don't have any tasks yet.", {"tasks": []})
        lines = "\n".join(_format_task_line(t) for t in tasks)
        return ToolResult(True, f"Here are your tasks:\n{lines}", {"tasks": tasks})

    def get_statistics(self, user_id=None) -> ToolResult:
        with self._lock:
            tasks = [t for t in self._tasks.values() if not user_id or t.get("user_id") in (None, user_id)]
        by_status = Counter(t["status"] for t in tasks)
        by_priority = Counter(t["priority"] for t in tasks)
        stats = {"total": len(tasks), "by_status": dict(by_status), "by_priority": dict(by_priority)}
        message = (
            f"You have {len(tasks)} task(s): {by_status.get('TODO', 0)} to do, "
            f"{by_status.get('IN_PROGRESS', 0)} in progress, {by_status.get('DONE', 0)} done."
        )
        return ToolResult(True, message, {"statistics": stats})

    def update_task(self, task_id, field_name, value, user_id=None) -> ToolResult:
        if field_name not in UPDATABLE_FIELDS:
            return ToolResult(False, f"I can't update '{field_name}'. Choose one of: {', '.join(UPDATABLE_FIELDS)}.")
        if field_name == "status" and str(value).upper() not in VALID_STATUSES:
            return ToolResult(False, f"Status must be one of: {', '.join(VALID_STATUSES)}.")
        with self._lock:
            task = self._find(task_id, user_id)
            if task is None:
                return ToolResult(False, f"I couldn't find task {task_id}.")
            if field_name in ("priority", "status"):
                value = str(value).upper()
            task[field_name] = value
            updated = dict(task)
        logger.info(f"Updated task #{updated['id']} {field_name}")
        return ToolResult(True, f"Updated the {field_name} of task #{updated['id']}.", {"task": updated})

    def delete_task(self, task_id, user_id=None) -> ToolResult:
        with self._lock:
            task = self._find(task_id, user_id)
            if task is None:
                return ToolResult(False, f"I couldn't find task {task_id}.")
            del self._tasks[task["id"]]
        logger.info(f"Deleted task #{task['id']}")
        return ToolResult(True, f"Deleted task #{task['id']} \"{task['title']}\".", {"task_id": task["id"]})


class RestTaskToolExecutor(ToolExecutor):
    """Calls the task CRUD backend over HTTP"""

    def __init__(self, base_url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> ToolResult:
        try:
            response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Task backend {method} {path} failed: {e}")
            return ToolResult(False, "The task service is unavailable right now. Please try again shortly.")

        if response.status_code == 404:
            return ToolResult(False, "I couldn't find that task.")
        if response.status_code >= 400:
            logger.error(f"Task backend {method} {path} returned {response.status_code}: {response.text[:200]}")
            return ToolResult(False, "The task service rejected that request.")
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        return ToolResult(True, "", data if isinstance(data, dict) else {"items": data})

    def create_task(self, title, description=None, priority=None, deadline=None,
                    project_id=None, user_id=None) -> ToolResult:
        payload = {
            "title": title,
            "description": description or DEFAULT_DESCRIPTION,
            "priority": (priority or DEFAULT_PRIORITY).upper(),
            "deadline": deadline,
            "projectId": project_id,
            "userId": user_id,
        }
        result = self._request("POST", "/tasks", json=payload)
        if result.success:
            task_id = result.data.get("id", "?")
            result.message = f"Created task #{task_id} \"{title}\"."
            result.data = {"task": result.data}
        return result

    def get_tasks(self, user_id=None, status=None, priority=None, limit=20) -> ToolResult:
        params = {k: v for k, v in {"userId": user_id, "status": status, "priority": priority, "limit": limit}.items() if v}
        result = self._request("GET", "/tasks", params=params)
        if result.success:
            tasks = result.data.get("items") or result.data.get("tasks") or []
            result.data = {"tasks": tasks}
            result.message = (
                "Here are your tasks:\n" + "\n".join(_format_task_line(t) for t in tasks)
                if tasks else "You don't have any tasks yet."
            )
        return result

    def get_statistics(self, user_id=None) -> ToolResult:
        params = {"userId": user_id} if user_id else {}
        result = self._request("GET", "/tasks/statistics", params=params)
        if result.success:
            result.message = f"You have {result.data.get('total', 0)} task(s)."
            result.data = {"statistics": result.data}
        return result

    def update_task(self, task_id, field_name, value, user_id=None) -> ToolResult:
        if field_name not in UPDATABLE_FIELDS:
            return ToolResult(False, f"I can't update '{field_name}'. Choose one of: {', '.join(UPDATABLE_FIELDS)}.")
        result = self._request("PATCH", f"/tasks/{task_id}", json={field_name: value, "userId": user_id})
        if result.success:
            result.message = f"Updated the {field_name} of task #{task_id}."
            result.data = {"task": result.data}
        return result

    def delete_task(self, task_id, user_id=None) -> ToolResult:
        params = {"userId": user_id} if user_id else {}
        result = self._request("DELETE", f"/tasks/{task_id}", params=params)
        if result.success:
            result.message = f"Deleted task #{task_id}."
            result.data = {"task_id": task_id}
        return result


def create_tool_executor() -> ToolExecutor:
    if settings.TASK_BACKEND_URL:
        return RestTaskToolExecutor(settings.TASK_BACKEND_URL, timeout=settings.TASK_BACKEND_TIMEOUT_SECONDS)
    return InMemoryTaskToolExecutor()
