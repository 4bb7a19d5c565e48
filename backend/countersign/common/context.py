import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from countersign.common.errors import Cancelled


@dataclass
class RequestContext:
    """Per-request metadata carried into every Store/Blob/Provider call."""

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    deadline: Optional[float] = None  # time.monotonic() based

    @classmethod
    def with_timeout(
        cls,
        seconds: Optional[float],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> "RequestContext":
        deadline = time.monotonic() + seconds if seconds else None
        return cls(
            request_id=request_id or str(uuid.uuid4()),
            ip_address=ip_address,
            user_agent=user_agent,
            deadline=deadline,
        )

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def ensure_active(self) -> None:
        if self.expired():
            raise Cancelled("request deadline exceeded", request_id=self.request_id)


def background_context() -> RequestContext:
    """Context for work started by the system rather than by a request."""
    return RequestContext(user_agent="countersign-worker")
