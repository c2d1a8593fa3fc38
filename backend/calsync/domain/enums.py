"""Domain enumerations for strong typing & validation."""
from enum import Enum

class Provider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"

class EventCategory(str, Enum):
    SHOOT = "shoot"
    MEETING = "meeting"
    REVIEW = "review"
    DELIVERY = "delivery"
    TRAVEL = "travel"
    OTHER = "other"

class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"

class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

class SyncMode(str, Enum):
    FULL = "full"
    PUSH = "push"

class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
