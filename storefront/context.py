# storefront/context.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field

ADMIN = "admin"


@dataclass(frozen=True)
class RequestContext:
    """Who is acting and on behalf of which request.

    Built once at the HTTP edge and handed to every service call so the
    services never reach for request globals themselves.
    """

    user_id: int | None
    role: str = "user"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    def owns(self, user_id) -> bool:
        return self.user_id is not None and self.user_id == user_id

    @classmethod
    def system(cls, request_id: str | None = None) -> "RequestContext":
        # webhooks and CLI jobs act as the system, not as a customer
        return cls(user_id=None, role="system", request_id=request_id or uuid.uuid4().hex)
