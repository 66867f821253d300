"""Enumerations used across the swap marketplace."""

from enum import Enum


class SlotStatus(str, Enum):
    BUSY = "BUSY"
    SWAPPABLE = "SWAPPABLE"
    SWAP_PENDING = "SWAP_PENDING"


class SwapStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class Decision(str, Enum):
    """Recipient's answer to a swap proposal."""

    ACCEPT = "accept"
    REJECT = "reject"


class RequestDirection(str, Enum):
    INCOMING = "incoming"  # viewer is the target user
    OUTGOING = "outgoing"  # viewer is the requester
    ALL = "all"


class TransitionActor(str, Enum):
    """Who is driving a slot status change."""

    OWNER = "owner"
    ENGINE = "engine"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"  # PostgreSQL or SQLite through SQLAlchemy
    REDIS = "redis"


TERMINAL_SWAP_STATUSES: frozenset[SwapStatus] = frozenset(
    {SwapStatus.ACCEPTED, SwapStatus.REJECTED}
)
