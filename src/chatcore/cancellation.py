"""Cancellation token threaded through a conversation turn.

One token is created per caller request and handed to the transport, the
stream consumer and every tool invocation.  Cancelling never raises inside
those layers; each one polls the token and stops issuing new work.
"""

from dataclasses import dataclass


@dataclass
class CancellationToken:
    """Shared cancel flag for one in-flight request."""
    cancelled: bool = False
    reason: str = ""

    def cancel(self, reason: str = "user"):
        if self.cancelled:
            return
        self.cancelled = True
        self.reason = reason


def is_cancelled(token) -> bool:
    """True when ``token`` is set; ``None`` means the request is not cancellable."""
    return token is not None and token.cancelled
