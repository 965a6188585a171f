"""Value types passed between the webhook route, the router and the workflow."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ExternalEvent:
    id: str
    type: str
    data_object: dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    user_id: str
    email: str

    def to_response(self) -> dict[str, str]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "userId": self.user_id,
            "email": self.email,
        }
