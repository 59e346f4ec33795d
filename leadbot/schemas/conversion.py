# leadbot/schemas/conversion.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DUPLICATE_CONVERSION = "DUPLICATE_CONVERSION"


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of one ad-conversion send.

    ``DUPLICATE_CONVERSION`` is an expected outcome, not a failure of the
    ad platform. Callers check ``is_duplicate`` before treating
    ``success=False`` as an error.
    """

    success: bool
    data: Optional[Any] = None
    error: Optional[Any] = None

    @classmethod
    def duplicate(cls) -> "ConversionResult":
        return cls(success=False, error=DUPLICATE_CONVERSION)

    @property
    def is_duplicate(self) -> bool:
        return not self.success and self.error == DUPLICATE_CONVERSION

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None or k == "success"}


class UserData(BaseModel):
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class ConversionEvent(BaseModel):
    event_name: str
    event_time: int
    action_source: str = "website"
    event_source_url: Optional[str] = None
    user_data: UserData = Field(default_factory=UserData)


class TokenVisitLead(BaseModel):
    event_source_url: Optional[str] = Field(default=None, max_length=2048)
    client_ip_address: Optional[str] = Field(default=None, max_length=64)
    client_user_agent: Optional[str] = Field(default=None, max_length=1024)
    fbp: Optional[str] = Field(default=None, max_length=255)
    fbc: Optional[str] = Field(default=None, max_length=255)

    model_config = {"extra": "allow"}


class TokenVisitRequest(BaseModel):
    lead: TokenVisitLead


class TokenVisitResponse(BaseModel):
    success: bool
    token: str
