"""
Tests for the Earnings Calculator and Rate Catalog
"""

import pytest

from node_ledger.billing import EarningsCalculator, Rate, RateCatalog, DEFAULT_RATE
from node_ledger.billing.calculator import duration_bonus, EarningsBreakdown, EarningsResult


class TestDurationBonus:
    """Test the capped duration bonus."""

    @pytest.mark.parametrize("duration_ms", [0, 1, 500, 1000])
    def test_no_bonus_up_to_one_second(self, duration_ms):
        assert duration_bonus(duration_ms) == 0.0

    def test_bonus_is_capped(self):
        assert duration_bonus(1500) == 0.01
        assert duration_bonus(10_000_000) == 0.01

    def test_cap_applies_just_past_threshold(self):
        """1001 / 10000 already exceeds the cap."""
        assert duration_bonus(1001) == pytest.approx(0.01, abs=1e-9)

    def test_monotonic_non_decreasing(self):
        values = [duration_bonus(d) for d in range(0, 5000, 37)]
        assert values == sorted(values)
        assert max(values) <= 0.01


class TestEarningsCalculator:
    """Test payout computation."""

    def test_chat_scenario(self):
        """100 input and 50 output tokens on the ollama chat rate."""
        catalog = RateCatalog()
        calculator = EarningsCalculator()

        result = calculator.calculate(catalog.lookup("ollama", "chat"), 100, 50, 1500)

        assert result.block_rewards == 0.0
        assert result.breakdown.input == pytest.approx(0.1)
        assert result.breakdown.output == pytest.approx(0.1)
        assert result.breakdown.base == pytest.approx(0.01)
        assert result.breakdown.duration == pytest.approx(0.01)
        assert result.job_rewards == pytest.approx(0.22)

    def test_short_call_has_no_duration_component(self):
        calculator = EarningsCalculator()
        result = calculator.calculate(Rate(0.001, 0.002, 0.01), 100, 50, 200)

        assert result.breakdown.duration == 0.0
        assert result.job_rewards == pytest.approx(0.21)

    @pytest.mark.parametrize("input_tokens,output_tokens,duration_ms", [
        (0, 0, 0),
        (1, 0, 999),
        (12345, 678, 4321),
        (10 ** 6, 10 ** 6, 10 ** 7),
    ])
    def test_breakdown_sums_to_job_rewards(self, input_tokens, output_tokens, duration_ms):
        calculator = EarningsCalculator()
        result = calculator.calculate(DEFAULT_RATE, input_tokens, output_tokens, duration_ms)

        assert abs(result.breakdown.total - result.job_rewards) <= 1e-4
        assert calculator.validate(result)

    def test_embeddings_have_no_output_reward(self):
        calculator = EarningsCalculator()
        rate = RateCatalog().lookup("ollama", "embeddings")
        result = calculator.calculate(rate, 400, 0)

        assert result.breakdown.output == 0.0
        assert result.job_rewards == pytest.approx(400 * 0.0005 + 0.005)

    def test_calculate_total(self):
        calculator = EarningsCalculator()
        results = [
            calculator.calculate(DEFAULT_RATE, 100, 50, 0),
            calculator.calculate(DEFAULT_RATE, 10, 5, 2000),
        ]
        total = calculator.calculate_total(results)

        assert total.job_rewards == pytest.approx(sum(r.job_rewards for r in results))
        assert total.breakdown.base == pytest.approx(0.02)
        assert calculator.validate(total)

    def test_format(self):
        result = EarningsCalculator().calculate(DEFAULT_RATE, 100, 50, 0)
        text = EarningsCalculator.format(result)

        assert text.startswith("Total: 0.210000")
        assert "Duration: 0.000000" in text


class TestValidate:
    """Test rejection of inconsistent results."""

    def test_rejects_breakdown_mismatch(self):
        result = EarningsResult(
            block_rewards=0.0,
            job_rewards=1.0,
            breakdown=EarningsBreakdown(input=0.1, output=0.1, base=0.01),
        )
        assert not EarningsCalculator().validate(result)

    def test_rejects_negative_component(self):
        result = EarningsResult(
            block_rewards=0.0,
            job_rewards=0.0,
            breakdown=EarningsBreakdown(input=-0.1, output=0.1),
        )
        assert not EarningsCalculator().validate(result)

    def test_accepts_within_tolerance(self):
        result = EarningsResult(
            block_rewards=0.0,
            job_rewards=0.21005,
            breakdown=EarningsBreakdown(input=0.1, output=0.1, base=0.01),
        )
        assert EarningsCalculator().validate(result)


class TestRateCatalog:
    """Test rate lookups."""

    def test_vllm_rates(self):
        catalog = RateCatalog()
        assert catalog.lookup("vllm", "chat/completions") == Rate(0.0015, 0.003, 0.015)
        assert catalog.lookup("vllm", "embeddings") == Rate(0.0008, 0.0, 0.008)

    def test_unknown_pair_falls_back_to_default(self):
        catalog = RateCatalog()
        assert catalog.lookup("mystery", "chat") == DEFAULT_RATE
        assert catalog.lookup("vllm", "generate") == DEFAULT_RATE

    def test_update_rate(self):
        catalog = RateCatalog()
        catalog.update_rate("vllm", "generate", Rate(0.1, 0.2, 0.3))

        assert catalog.lookup("vllm", "generate") == Rate(0.1, 0.2, 0.3)
        assert "generate" in catalog.kinds("vllm")

    def test_summary(self):
        summary = RateCatalog().summary()

        assert summary["families"] == ["ollama", "vllm"]
        assert summary["rate_ranges"]["input_min"] == 0.0005
        assert summary["rate_ranges"]["output_max"] == 0.003
