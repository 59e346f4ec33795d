# leadbot/clients/meta_capi.py
"""
Meta Conversions API client.

Sends server-side conversion events for ad attribution.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from leadbot.clients import http
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.conversion import ConversionResult

logger = get_structlog_logger(__name__)


class MetaConversionsClient:
    def __init__(
        self,
        *,
        access_token: str,
        pixel_id: str,
        api_version: str = "v18.0",
        test_event_code: Optional[str] = None,
        timeout: float = 10,
    ):
        self.access_token = access_token
        self.pixel_id = pixel_id
        self.api_version = api_version
        self.test_event_code = test_event_code
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.pixel_id)

    @property
    def url(self) -> str:
        return (
            f"https://graph.facebook.com/{self.api_version}/{self.pixel_id}/events"
            f"?access_token={self.access_token}"
        )

    def build_payload(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"data": [event]}
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code
        return payload

    async def send_event(self, event: Dict[str, Any]) -> ConversionResult:
        if not self.configured:
            logger.error("meta.not_configured", event_name=event.get("event_name"))
            return ConversionResult(success=False, error="Meta Conversions API not configured")

        success, status, body, error = await http.request_json(
            "POST",
            self.url,
            json=self.build_payload(event),
            timeout=self.timeout,
        )
        if not success:
            logger.error(
                "meta.send_failed",
                event_name=event.get("event_name"),
                status=status,
                error=error,
            )
            return ConversionResult(success=False, error=body if isinstance(body, dict) else error)

        logger.info("meta.event_sent", event_name=event.get("event_name"), response=body)
        return ConversionResult(success=True, data=body)
