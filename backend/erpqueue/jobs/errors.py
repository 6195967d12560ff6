from __future__ import annotations


class QueueUnavailableError(RuntimeError):
    """The queue store could not durably record a job."""


class JobPermanentError(RuntimeError):
    """A failure that retrying cannot fix; the job is finalized immediately."""


class DeliveryError(RuntimeError):
    def __init__(self, message: str, *, recipient: str | None = None) -> None:
        super().__init__(message)
        self.recipient = recipient
