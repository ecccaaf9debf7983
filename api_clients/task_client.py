from typing import Any, Dict, Optional
from api_clients.base_client import BaseClient


class TaskClient(BaseClient):
    """Task, calendar and follow-up records in the product backend."""

    def create_task(self, task: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._post("/tasks", json=task)

    def create_calendar_event(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._post("/calendar-events", json=event)

    def create_followup(self, followup: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._post("/followups", json=followup)
