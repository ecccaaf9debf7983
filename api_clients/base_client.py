import requests
from typing import Any, Dict, Optional
import os
import logging

logger = logging.getLogger("automation_engine")


class BaseClient:
    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        self.base_url = (base_url or os.getenv("AUTOMATION_BACKEND_URL", "http://localhost:8000/api")).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        api_key = os.getenv("AUTOMATION_BACKEND_API_KEY")
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})

    def _get(self, endpoint: str, params: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.get(f"{self.base_url}{endpoint}", params=params, timeout=self.timeout)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error(f"GET {endpoint} failed: {e}")
            return None

    def _post(self, endpoint: str, json: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.post(f"{self.base_url}{endpoint}", json=json, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error(f"POST {endpoint} failed: {e}")
            if getattr(e, "response", None) is not None:
                logger.error(f"Response: {e.response.text}")
            return None

    def _put(self, endpoint: str, json: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.put(f"{self.base_url}{endpoint}", json=json, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error(f"PUT {endpoint} failed: {e}")
            return None

    def _patch(self, endpoint: str, json: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.patch(f"{self.base_url}{endpoint}", json=json, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error(f"PATCH {endpoint} failed: {e}")
            return None

    def _delete(self, endpoint: str) -> bool:
        try:
            resp = self.session.delete(f"{self.base_url}{endpoint}", timeout=self.timeout)
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"DELETE {endpoint} failed: {e}")
            return False
