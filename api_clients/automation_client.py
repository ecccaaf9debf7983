from typing import Any, Dict, List, Optional
from api_clients.base_client import BaseClient
from models.automation import Automation, AutomationStatus
from models.analytics import AutomationFilter
from pydantic import ValidationError
import logging

logger = logging.getLogger("automation_engine")


class AutomationClient(BaseClient):
    """Reads automation definitions owned by the product backend."""

    def _parse(self, data: Optional[Dict[str, Any]]) -> Optional[Automation]:
        if not data:
            return None
        try:
            return Automation.model_validate(data)
        except ValidationError as e:
            logger.error(f"Automation {data.get('id')} has an invalid definition: {e}")
            return None

    def get(self, automation_id: str) -> Optional[Automation]:
        return self._parse(self._get(f"/automations/{automation_id}"))

    def get_version(self, automation_id: str, version: int) -> Optional[Automation]:
        """The definition as published at `version`, for enrollments pinned to it."""
        return self._parse(self._get(f"/automations/{automation_id}/versions/{version}"))

    def list(self, filters: Optional[AutomationFilter] = None) -> List[Automation]:
        params = filters.model_dump(exclude_none=True, mode="json") if filters else None
        rows = self._get("/automations", params=params) or []
        return [automation for automation in (self._parse(row) for row in rows) if automation]

    def set_active(self, automation_id: str, active: bool) -> Optional[Automation]:
        status = AutomationStatus.ACTIVE if active else AutomationStatus.PAUSED
        return self._parse(
            self._patch(f"/automations/{automation_id}", json={"is_active": active, "status": status.value})
        )

    def delete(self, automation_id: str) -> bool:
        return self._delete(f"/automations/{automation_id}")
