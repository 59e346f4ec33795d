# leadbot/schemas/responses.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    processed: bool
    message: str
    duplicate: Optional[bool] = None
    reason: Optional[str] = None
    state: Optional[str] = None
    decision: Optional[Dict[str, Any]] = None
    current_status: Optional[str] = None
    extracted_code: Optional[str] = None
    conversion: Optional[Dict[str, Any]] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
