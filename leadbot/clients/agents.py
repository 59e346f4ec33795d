# leadbot/clients/agents.py
from __future__ import annotations

from pydantic import ValidationError

from leadbot.clients import http
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.decision import AIDecision, AIDecisionRequest

logger = get_structlog_logger(__name__)


class AgentsClient:
    def __init__(self, *, base_url: str, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}/api/agents/sales"

    async def decide(self, request: AIDecisionRequest) -> AIDecision:
        """Ask the sales agent for a decision. Any failure yields the fallback decision."""
        success, status, body, error = await http.request_json(
            "POST",
            self.url,
            json=request.to_payload(),
            timeout=self.timeout,
        )
        if not success:
            logger.warning(
                "agents.request_failed",
                talk_id=request.talk_id,
                status=status,
                error=error,
            )
            return AIDecision.fallback(request.current_status, error or "request failed")

        # Some deployments wrap the decision in {"decision": {...}}
        if isinstance(body, dict) and isinstance(body.get("decision"), dict):
            body = body["decision"]

        try:
            decision = AIDecision.model_validate(body)
        except ValidationError as e:
            logger.warning(
                "agents.invalid_decision",
                talk_id=request.talk_id,
                errors=[error.get("msg") for error in e.errors()],
            )
            return AIDecision.fallback(request.current_status, "invalid decision")

        logger.info(
            "agents.decided",
            talk_id=request.talk_id,
            current_status=decision.current_status,
            new_status=decision.new_status,
            should_change=decision.should_change,
            confidence=decision.confidence,
        )
        return decision
