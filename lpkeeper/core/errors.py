"""
Error taxonomy for the liquidity engine.

Every failure the engine can observe falls into one of five kinds, and the
kind decides the handling policy:

- TransientError: retried with backoff; the affected position is excluded
  from the current cycle once retries are exhausted.
- PartialFailure: a multi-step operation stopped halfway; the position is
  held until an operator clears it.
- InconsistencyError: local belief differs from remote truth or a data
  source is unusable; reconcile, degrade, or fall back.
- PolicyViolation: the operation would break an invariant; rejected before
  submission.
- FatalError: autonomy stops immediately and waits for a human.
"""

from __future__ import annotations

from typing import Optional


class LpKeeperError(Exception):
    """Base class for all engine errors."""


# ----- Transient -----

class TransientError(LpKeeperError):
    """Temporary condition (timeout, rate limit, unreachable endpoint)."""


class LedgerUnavailable(TransientError):
    """The ledger read surface could not be reached."""


class StaleLedgerRead(TransientError):
    """The ledger answered but with data older than the allowed age."""


class FeedUnavailable(TransientError):
    """The ranking feed could not be fetched."""


# ----- Partial failure -----

class PartialFailure(LpKeeperError):
    """First leg of a multi-step operation succeeded, a later leg failed."""

    def __init__(self, message: str, position_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.position_id = position_id


# ----- Inconsistency -----

class InconsistencyError(LpKeeperError):
    """Local state and an authoritative source disagree."""


class StateCorruption(InconsistencyError):
    """A persisted state document failed to deserialize or validate."""


class FeedValidationError(InconsistencyError):
    """A ranking feed payload failed validation as a whole."""


# ----- Policy violation -----

class PolicyViolation(LpKeeperError):
    """The requested operation would violate an engine or protocol rule."""


class CompositionViolation(PolicyViolation):
    """A bucket was allowed to receive a token its side rule forbids."""


class DistributionSumError(PolicyViolation):
    """A weight vector does not sum to exactly the weight unit."""


class CooldownActive(PolicyViolation):
    """The position was rebalanced inside its cooldown window."""


class GasCapExceeded(PolicyViolation):
    """Rolling 24h gas spend reached its cap."""


class UnsupportedProtocol(PolicyViolation):
    """No adapter is registered for the requested protocol variant."""


# ----- Fatal -----

class FatalError(LpKeeperError):
    """Autonomous action must stop until an operator intervenes."""


class IdentityMismatch(FatalError):
    """The signing identity does not match the configured owner."""


class StateCommitError(FatalError):
    """State could not be written to disk."""


# ----- Contract violations -----

class InvalidPrice(ValueError):
    """A price of zero, below zero, or not finite was passed to the price model."""


class CommandValidationError(ValueError):
    """A command failed schema validation at the boundary."""
