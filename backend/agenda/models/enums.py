import enum

# These enums are stored as VARCHAR columns so new values never need an
# ALTER TYPE migration.


class JobType(str, enum.Enum):
    REMINDER = "reminder"
    REPETITION_LINK = "repetition_link"


class JobStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    LOCKED = "locked"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Live or completed jobs block a second job with the same dedup key.
DEDUP_BLOCKING_STATUSES = (JobStatus.SCHEDULED, JobStatus.LOCKED, JobStatus.DONE)
TERMINAL_JOB_STATUSES = (JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED)


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecurrenceUnit(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ChainStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FundingMethod(str, enum.Enum):
    PACKAGE = "package"          # Prepaid package session
    PAY_PER_USE = "pay_per_use"  # Charged per appointment


class WarningKind(str, enum.Enum):
    INSUFFICIENT_SESSIONS = "Insufficient Sessions"
    NO_PACKAGE = "No Package"


class WarningStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class PendingOrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
