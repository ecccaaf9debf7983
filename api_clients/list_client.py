from api_clients.base_client import BaseClient


class ListClient(BaseClient):
    """Static list / segment membership."""

    def add_member(self, list_id: str, lead_id: str) -> bool:
        resp = self._post(f"/lists/{list_id}/members", json={"lead_id": lead_id})
        return resp is not None

    def remove_member(self, list_id: str, lead_id: str) -> bool:
        return self._delete(f"/lists/{list_id}/members/{lead_id}")
