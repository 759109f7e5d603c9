"""Error taxonomy shared by job handlers and the dispatcher.

The dispatcher classifies every exception escaping a handler:

* ``TransientIOError`` (and driver/network errors) -> retried with backoff
* ``PermanentDataError`` -> job marked failed, never retried

``NotificationError`` never reaches the dispatcher; it is converted into a
failed ``SendResult`` for the single recipient concerned. Funding shortfalls
are not errors at all and are recorded as warnings.
"""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class TransientIOError(SchedulerError):
    """A store or network blip; the job is retried."""


class PermanentDataError(SchedulerError):
    """Referenced data is missing or invalid; retrying cannot help."""


class NotificationError(SchedulerError):
    """Delivery to a single recipient failed."""

    def __init__(self, recipient: str, detail: str):
        super().__init__(detail)
        self.recipient = recipient
        self.detail = detail


class ConcurrentUpdateError(SchedulerError):
    """Optimistic concurrency check failed on an appointment."""
