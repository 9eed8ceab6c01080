"""Ambient invocation context handed to handlers that ask for it.

A handler receives the context by annotating its first parameter with
``InvokeContext``. The context is informational: lamrpc forwards it but never
enforces the deadline it carries.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class InvokeContext:
    """Per-call context.

    Attributes:
        request_id: Identifier of this invocation.
        function_name: Name of the deployed function, when known.
        deadline: Absolute deadline as a ``time.time()`` timestamp, or None.
        metadata: Free-form values supplied by the host.
    """

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    function_name: str | None = None
    deadline: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs: Any) -> InvokeContext:
        return cls(deadline=time.time() + seconds, **kwargs)

    @classmethod
    def from_lambda_context(cls, lambda_context: Any) -> InvokeContext:
        """Build a context from the object the AWS Lambda runtime passes in."""
        if lambda_context is None:
            return cls()

        deadline = None
        remaining = getattr(lambda_context, "get_remaining_time_in_millis", None)
        if callable(remaining):
            deadline = time.time() + remaining() / 1000.0

        return cls(
            request_id=getattr(lambda_context, "aws_request_id", None) or uuid.uuid4().hex,
            function_name=getattr(lambda_context, "function_name", None),
            deadline=deadline,
        )

    def remaining_seconds(self) -> float | None:
        """Seconds left before the deadline (never negative), or None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    @property
    def expired(self) -> bool:
        remaining = self.remaining_seconds()
        return remaining is not None and remaining <= 0.0
