"""
Domain enums for the order lifecycle.

Stored as plain strings in the database; the str mixin keeps comparisons
against raw column values working.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TrackingStage(str, Enum):
    WAITING = "waiting"
    WORKING = "working"
    PAYMENT_RECEIVED = "payment_received"


class ReadinessStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    NOT_READY = "not_ready"
    NO_RESPONSE = "no_response"  # reminder limit reached without an answer
    NEEDS_REASSIGNMENT = "needs_reassignment"  # ready, but never started moving


class PaymentStatus(str, Enum):
    RECEIVED = "received"


class DifferenceCause(str, Enum):
    MATCHING = "matching"
    TIP = "tip"
    WALLET = "wallet"
    NO_CHANGE = "no_change"
    OTHER = "other"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Urgency(str, Enum):
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    DUE_LATER = "due_later"
    UNSCHEDULED = "unscheduled"


class BookingSlot(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
