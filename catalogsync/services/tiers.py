"""Ordered fallback chains over cache and network tiers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TierStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass(slots=True)
class TierResult(Generic[T]):
    """Outcome of consulting a single tier."""

    status: TierStatus
    value: T | None = None
    error: Exception | None = None

    @classmethod
    def hit(cls, value: T) -> "TierResult[T]":
        return cls(TierStatus.HIT, value=value)

    @classmethod
    def miss(cls) -> "TierResult[T]":
        return cls(TierStatus.MISS)

    @classmethod
    def failed(cls, error: Exception) -> "TierResult[T]":
        return cls(TierStatus.ERROR, error=error)

    @property
    def is_hit(self) -> bool:
        return self.status is TierStatus.HIT


@dataclass(slots=True)
class Tier(Generic[T]):
    name: str
    lookup: Callable[[], Awaitable[TierResult[T]]]


@dataclass(slots=True)
class ChainOutcome(Generic[T]):
    """Which tier answered, if any, and what failed on the way."""

    tier: str | None
    value: T | None
    errors: list[Exception] = field(default_factory=list)
    visited: list[tuple[str, TierStatus]] = field(default_factory=list)

    @property
    def answered(self) -> bool:
        return self.tier is not None


async def resolve(tiers: Sequence[Tier[T]]) -> ChainOutcome[T]:
    """Consult ``tiers`` in order and stop at the first hit.

    Errors reported by a tier are collected and the chain moves on; the
    caller decides whether an unanswered chain surfaces them.
    """

    outcome: ChainOutcome[T] = ChainOutcome(tier=None, value=None)
    for tier in tiers:
        result = await tier.lookup()
        outcome.visited.append((tier.name, result.status))
        if result.status is TierStatus.ERROR and result.error is not None:
            outcome.errors.append(result.error)
            logger.debug("Tier %s failed: %s", tier.name, result.error)
            continue
        if result.is_hit:
            outcome.tier = tier.name
            outcome.value = result.value
            return outcome
    return outcome
