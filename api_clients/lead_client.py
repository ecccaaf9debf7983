from typing import Any, Dict, List, Optional
from api_clients.base_client import BaseClient
from models.lead import Lead
from pydantic import ValidationError
import logging

logger = logging.getLogger("automation_engine")


class LeadClient(BaseClient):

    def _parse(self, data: Optional[Dict[str, Any]]) -> Optional[Lead]:
        if not data:
            return None
        try:
            return Lead.model_validate(data)
        except ValidationError as e:
            logger.error(f"Lead payload could not be parsed: {e}")
            return None

    def get(self, lead_id: str) -> Optional[Lead]:
        return self._parse(self._get(f"/leads/{lead_id}"))

    def update(self, lead_id: str, updates: Dict[str, Any]) -> Optional[Lead]:
        return self._parse(self._patch(f"/leads/{lead_id}", json=updates))

    def search(self, filters: Optional[Dict[str, Any]] = None, limit: int = 1000) -> List[Lead]:
        """Audience lookup: status/source equality and tag overlap."""
        params = dict(filters or {})
        if isinstance(params.get("tags"), list):
            params["tags"] = ",".join(params["tags"])
        params["limit"] = limit
        rows = self._get("/leads", params=params) or []
        return [lead for lead in (self._parse(row) for row in rows) if lead]

    def pick_advisor(self, method: str, team_id: Optional[str] = None) -> Optional[str]:
        """Asks the backend for the next advisor (round robin or least loaded)."""
        params = {"method": method}
        if team_id:
            params["team_id"] = team_id
        resp = self._get("/advisors/next", params=params)
        return resp.get("advisor_id") if resp else None
