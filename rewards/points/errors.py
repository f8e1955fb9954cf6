"""
Exception hierarchy for the points engine.

Fatal classes (OutOfOrderEventError, EffectiveUserMismatchError,
InvalidInterestOperationError) signal corrupt input or a key-derivation bug.
They abort the whole epoch run and must never be caught and skipped.
"""

from __future__ import annotations


class PointsEngineError(Exception):
    """Base exception for all points engine errors."""


class OutOfOrderEventError(PointsEngineError):
    """An event or snapshot precedes the accumulator's last-updated watermark."""

    def __init__(self, timestamp: int, last_updated: int, owner: str = ""):
        self.timestamp = timestamp
        self.last_updated = last_updated
        self.owner = owner
        super().__init__(
            f"Incorrect event order for {owner or 'unknown owner'}: "
            f"timestamp {timestamp} < last updated {last_updated}"
        )


class EffectiveUserMismatchError(PointsEngineError):
    """A processed event's owner disagrees with the accumulator's recorded owner."""

    def __init__(self, expected: str, found: str):
        self.expected = expected
        self.found = found
        super().__init__(f"Effective user mismatch: expected {expected}, found {found}")


class InvalidInterestOperationError(PointsEngineError):
    """An unrecognized interest policy reached an accumulator."""

    def __init__(self, operation):
        self.operation = operation
        super().__init__(f"Invalid operation, found: {operation!r}")


class InvalidAddressError(PointsEngineError, ValueError):
    """A configured address (blacklist, remapping) is not a valid hex address."""


class InvalidRewardWeightsError(PointsEngineError, ValueError):
    """Per-market reward weights do not sum to the program's declared total."""


class EmptyDistributionError(PointsEngineError, ValueError):
    """A Merkle tree was requested for an empty account-to-amount map."""


class FinalizedEpochError(PointsEngineError):
    """Attempted to overwrite an epoch output whose Merkle root is already published."""


__all__ = [
    "PointsEngineError",
    "OutOfOrderEventError",
    "EffectiveUserMismatchError",
    "InvalidInterestOperationError",
    "InvalidAddressError",
    "InvalidRewardWeightsError",
    "EmptyDistributionError",
    "FinalizedEpochError",
]
