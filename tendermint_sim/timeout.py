# tendermint_sim/timeout.py
"""
Round timeout tracking and escalation.

A round that runs longer than the current timeout duration is abandoned and
the next round waits longer (exponential backoff, clamped to the configured
bounds). A commit resets the duration to its base value. Synchronous networks
never time out.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from .config import ConsensusConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutEvent:
    """A round abandoned because its timer ran out"""
    round: int
    height: int
    elapsed: float
    duration: float
    next_duration: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "height": self.height,
            "elapsed": self.elapsed,
            "duration": self.duration,
            "nextDuration": self.next_duration,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TimingContext:
    """Timer state carried from round to round"""
    round_start_time: float
    timeout_duration: float
    base_timeout_duration: float
    consecutive_timeouts: int = 0
    total_timeouts: int = 0
    history: Tuple[TimeoutEvent, ...] = ()

    def elapsed(self, now: float) -> float:
        return now - self.round_start_time


class TimeoutController:
    """Applies the timeout rules of a ConsensusConfig to TimingContext values"""

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()

    def initial_context(self, now: float = 0.0) -> TimingContext:
        base = float(self.config.round_timeout)
        return TimingContext(round_start_time=now, timeout_duration=base, base_timeout_duration=base)

    def is_timed_out(self, ctx: TimingContext, now: float, synchronous: bool = False) -> bool:
        """elapsed >= duration; always False in synchronous mode"""
        if synchronous:
            return False
        return ctx.elapsed(now) >= ctx.timeout_duration

    def next_duration(self, duration: float) -> float:
        if not self.config.timeout_escalation_enabled:
            return duration
        escalated = duration * self.config.timeout_multiplier
        return float(min(max(escalated, self.config.min_timeout), self.config.max_timeout))

    def on_timeout(self, ctx: TimingContext, now: float, round_number: int = 0,
                   height: int = 0) -> Tuple[TimingContext, TimeoutEvent]:
        """Record a timeout, escalate the duration and restart the timer"""
        next_duration = self.next_duration(ctx.timeout_duration)
        event = TimeoutEvent(round=round_number, height=height, elapsed=ctx.elapsed(now),
                             duration=ctx.timeout_duration, next_duration=next_duration, timestamp=now)
        logger.warning("Round %s timed out after %.0fms (limit %.0fms); next timeout %.0fms",
                       round_number, event.elapsed, ctx.timeout_duration, next_duration)
        updated = replace(
            ctx,
            round_start_time=now,
            timeout_duration=next_duration,
            consecutive_timeouts=ctx.consecutive_timeouts + 1,
            total_timeouts=ctx.total_timeouts + 1,
            history=ctx.history + (event,),
        )
        return updated, event

    def on_commit(self, ctx: TimingContext) -> TimingContext:
        """A commit resets the duration to base and clears the consecutive count"""
        if ctx.consecutive_timeouts:
            logger.info("Commit after %d consecutive timeouts, timeout reset to %.0fms",
                        ctx.consecutive_timeouts, ctx.base_timeout_duration)
        return replace(ctx, timeout_duration=ctx.base_timeout_duration, consecutive_timeouts=0)

    def on_round_complete(self, ctx: TimingContext, now: float) -> TimingContext:
        return replace(ctx, round_start_time=now)

    def reset(self, now: float = 0.0) -> TimingContext:
        return self.initial_context(now)
