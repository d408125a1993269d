"""Token bucket model and the storage interface for buckets."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


class BucketNotFoundError(LookupError):
    """Raised when no bucket exists for a key."""

    def __init__(self, message: str = "bucket not found") -> None:
        super().__init__(message)


@dataclass
class Bucket:
    """State of one client's token bucket."""

    tokens: int
    capacity: int
    refill_rate: int
    last_refill: datetime


class BucketRepository(ABC):
    """Storage for token buckets keyed by client."""

    @abstractmethod
    def create_bucket(self, key: str, capacity: int, refill_rate: int, tokens: int) -> None:
        """Create or overwrite the bucket for ``key``."""

    @abstractmethod
    def bucket(self, key: str) -> Bucket:
        """Return the bucket for ``key``; raise BucketNotFoundError if absent."""

    @abstractmethod
    def decrease(self, key: str) -> bool:
        """Take one token; return False when none is available."""

    @abstractmethod
    def refill_all_buckets(self) -> None:
        """Top up every stored bucket."""