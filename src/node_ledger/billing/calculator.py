"""
Earnings Calculator

job_rewards = input_tokens * rate.input
            + output_tokens * rate.output
            + rate.base
            + duration bonus

The duration bonus rewards calls longer than one second, capped at 0.01
so a pathological duration cannot produce an unbounded payout.
block_rewards belong to a separate reward channel and are always 0 here.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List
import structlog

from .rates import Rate

logger = structlog.get_logger()

TOLERANCE = 1e-4
DURATION_BONUS_THRESHOLD_MS = 1000
DURATION_BONUS_DIVISOR = 10000
DURATION_BONUS_CAP = 0.01


@dataclass
class EarningsBreakdown:
    """Components summing to job_rewards."""
    input: float = 0.0
    output: float = 0.0
    base: float = 0.0
    duration: float = 0.0

    @property
    def total(self) -> float:
        return self.input + self.output + self.base + self.duration

    def to_dict(self) -> Dict[str, float]:
        return {
            "input": self.input,
            "output": self.output,
            "base": self.base,
            "duration": self.duration,
        }


@dataclass
class EarningsResult:
    """Payout for one unit of work."""
    block_rewards: float
    job_rewards: float
    breakdown: EarningsBreakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_rewards": self.block_rewards,
            "job_rewards": self.job_rewards,
            "breakdown": self.breakdown.to_dict(),
        }


def duration_bonus(duration_ms: float) -> float:
    if not duration_ms or duration_ms <= DURATION_BONUS_THRESHOLD_MS:
        return 0.0
    return min(duration_ms / DURATION_BONUS_DIVISOR, DURATION_BONUS_CAP)


class EarningsCalculator:
    """Pure payout computation plus the breakdown validator."""

    def calculate(
        self,
        rate: Rate,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float = 0,
    ) -> EarningsResult:
        breakdown = EarningsBreakdown(
            input=input_tokens * rate.input,
            output=output_tokens * rate.output,
            base=rate.base,
            duration=duration_bonus(duration_ms),
        )
        result = EarningsResult(
            block_rewards=0.0,
            job_rewards=breakdown.total,
            breakdown=breakdown,
        )

        logger.debug("earnings_calculated", **result.to_dict())
        return result

    def calculate_total(self, results: Iterable[EarningsResult]) -> EarningsResult:
        """Sum several results component by component."""
        total = EarningsBreakdown()
        block = 0.0
        job = 0.0
        for r in results:
            block += r.block_rewards
            job += r.job_rewards
            total.input += r.breakdown.input
            total.output += r.breakdown.output
            total.base += r.breakdown.base
            total.duration += r.breakdown.duration
        return EarningsResult(block_rewards=block, job_rewards=job, breakdown=total)

    def validate(self, result: EarningsResult) -> bool:
        """
        Check a result before it is persisted.

        All components must be non-negative and the breakdown must sum to
        job_rewards within TOLERANCE. A failure here is a programming error.
        """
        components: List[float] = [
            result.block_rewards,
            result.job_rewards,
            *result.breakdown.to_dict().values(),
        ]
        if any(c < 0 for c in components):
            logger.error("earnings_invalid", reason="negative_component", **result.to_dict())
            return False

        if abs(result.breakdown.total - result.job_rewards) > TOLERANCE:
            logger.error("earnings_invalid", reason="breakdown_mismatch", **result.to_dict())
            return False

        return True

    @staticmethod
    def format(result: EarningsResult) -> str:
        b = result.breakdown
        return (
            f"Total: {result.job_rewards:.6f} "
            f"(Input: {b.input:.6f}, Output: {b.output:.6f}, "
            f"Base: {b.base:.6f}, Duration: {b.duration:.6f})"
        )
