from typing import Any, Dict, Optional
import logging

import requests

from errors import WebhookError

logger = logging.getLogger("automation_engine")


class WebhookClient:
    """Generic outbound HTTP caller used by webhook steps."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout
        self.session = requests.Session()

    def call(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Sends one request. Returns {"status_code", "body"} on 2xx and raises
        WebhookError otherwise; the status code decides whether it is retryable.
        """
        try:
            resp = self.session.request(method.upper(), url, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise WebhookError(f"Webhook {method} {url} failed: {e}")

        if not resp.ok:
            raise WebhookError(f"Webhook {method} {url} returned {resp.status_code}", status_code=resp.status_code)

        try:
            payload = resp.json()
        except ValueError:
            payload = resp.text
        logger.debug(f"Webhook {method} {url} -> {resp.status_code}")
        return {"status_code": resp.status_code, "body": payload}
