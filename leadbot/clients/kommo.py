# leadbot/clients/kommo.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from leadbot.clients import http
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.decision import UNKNOWN_STATUS

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class StatusUpdateResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.error:
            body["error"] = self.error
        return body


class KommoClient:
    """The few CRM calls the bot needs: read a lead, move it to a status."""

    def __init__(
        self,
        *,
        subdomain: str,
        access_token: str,
        status_ids: Dict[str, str],
        timeout: float = 10,
    ):
        self.subdomain = subdomain
        self.access_token = access_token
        self.status_ids = status_ids
        self.status_names = {status_id: name for name, status_id in status_ids.items()}
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.subdomain and self.access_token)

    def _lead_url(self, lead_id: str) -> str:
        return f"https://{self.subdomain}.kommo.com/api/v4/leads/{lead_id}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def status_name(self, status_id: Optional[str]) -> Optional[str]:
        if status_id is None:
            return None
        return self.status_names.get(str(status_id))

    async def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        if not self.configured:
            logger.warning("kommo.not_configured", operation="get_lead", lead_id=lead_id)
            return None

        success, status, body, error = await http.request_json(
            "GET",
            self._lead_url(lead_id),
            headers=self._headers(),
            timeout=self.timeout,
        )
        if not success or not isinstance(body, dict):
            logger.warning("kommo.get_lead_failed", lead_id=lead_id, status=status, error=error)
            return None
        return body

    async def get_lead_status(self, lead_id: str) -> str:
        """Current status name of a lead, ``sin-status`` when it cannot be resolved."""
        lead = await self.get_lead(lead_id)
        if lead is None:
            return UNKNOWN_STATUS

        name = self.status_name(lead.get("status_id"))
        if name is None:
            logger.info("kommo.status_unmapped", lead_id=lead_id, status_id=lead.get("status_id"))
            return UNKNOWN_STATUS
        return name

    async def update_lead_status(self, lead_id: str, status_name: str) -> StatusUpdateResult:
        status_id = self.status_ids.get(status_name)
        if status_id is None:
            logger.error("kommo.status_not_configured", lead_id=lead_id, status=status_name)
            return StatusUpdateResult(success=False, error=f"No status id configured for {status_name}")

        if not self.configured:
            logger.warning("kommo.not_configured", operation="update_lead_status", lead_id=lead_id)
            return StatusUpdateResult(success=False, error="Kommo client not configured")

        success, status, _, error = await http.request_json(
            "PATCH",
            self._lead_url(lead_id),
            json={"status_id": int(status_id) if status_id.isdigit() else status_id},
            headers=self._headers(),
            timeout=self.timeout,
        )
        if not success:
            logger.error(
                "kommo.update_status_failed",
                lead_id=lead_id,
                status=status_name,
                http_status=status,
                error=error,
            )
            return StatusUpdateResult(success=False, error=error)

        logger.info("kommo.status_updated", lead_id=lead_id, status=status_name)
        return StatusUpdateResult(success=True)
