import time
import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RequestContext:
    """Request-scoped identity and limits, passed explicitly through every call."""

    actor_id: str
    role: str = "staff"
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    # time.monotonic() value after which work should stop
    deadline: float | None = None

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def with_timeout(self, seconds: float) -> "RequestContext":
        deadline = time.monotonic() + seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return RequestContext(self.actor_id, self.role, self.correlation_id, deadline)
