"""
Tests for the tiered royalty calculator.

Covers:
- Breakdown arithmetic and its conservation rules
- Input validation
- Tier comparison and recommendations
- Claim previews
- Economics and break-even projections
"""

import pytest

from errors import ConfigurationError, InvalidAmountError, InvalidTierError
from royalty_calculator import (
    DEFAULT_TIER_RATES,
    LicenseTier,
    PreviewAction,
    RoyaltyCalculator,
    TierRates,
)
from token_units import ONE_TOKEN


@pytest.fixture
def calculator():
    return RoyaltyCalculator()


class TestLicenseTier:
    """Tests for tier parsing."""

    def test_parse_is_case_insensitive(self):
        """Tier names are normalized."""
        assert LicenseTier.parse("PREMIUM ") is LicenseTier.PREMIUM
        assert LicenseTier.parse(LicenseTier.FREE) is LicenseTier.FREE

    def test_unknown_tier(self):
        """Unknown tiers raise InvalidTierError listing the valid ones."""
        with pytest.raises(InvalidTierError) as exc_info:
            LicenseTier.parse("platinum")
        assert exc_info.value.details["validTiers"] == ["free", "premium", "exclusive"]


class TestTierTable:
    """Tests for tier table validation."""

    def test_default_table_is_valid(self):
        """The default rates construct a calculator."""
        calculator = RoyaltyCalculator()
        assert calculator.rates_for("premium").royalty_rate == 10

    def test_rates_over_100_percent(self):
        """A tier whose rates exceed 100% is rejected at construction."""
        table = dict(DEFAULT_TIER_RATES)
        table[LicenseTier.PREMIUM] = TierRates(80, 15, 10)
        with pytest.raises(ConfigurationError):
            RoyaltyCalculator(tier_rates=table)

    def test_missing_tier(self):
        """Every tier must be present."""
        table = dict(DEFAULT_TIER_RATES)
        del table[LicenseTier.EXCLUSIVE]
        with pytest.raises(ConfigurationError):
            RoyaltyCalculator(tier_rates=table)

    def test_negative_gas_estimate(self):
        """Gas estimates cannot be negative."""
        with pytest.raises(ConfigurationError):
            RoyaltyCalculator(gas_fee_estimate=-1)


class TestComputeBreakdown:
    """Tests for revenue splits."""

    def test_premium_one_token(self, calculator):
        """Premium splits 10/5/3 with the gas estimate taken from the royalty."""
        breakdown = calculator.compute_breakdown(ONE_TOKEN, "premium")

        assert breakdown.royalty_amount == ONE_TOKEN // 10
        assert breakdown.platform_fee == ONE_TOKEN // 20
        assert breakdown.reader_rewards == 3 * ONE_TOKEN // 100
        assert breakdown.remaining_amount == 82 * ONE_TOKEN // 100
        assert breakdown.gas_fee_estimate == 2 * ONE_TOKEN // 1000
        assert breakdown.net_amount == 48 * ONE_TOKEN // 1000

    def test_percentages(self, calculator):
        """Percentages are reported with two decimals."""
        breakdown = calculator.compute_breakdown(ONE_TOKEN, LicenseTier.PREMIUM)
        assert breakdown.percentages == {
            "royaltyPercentage": 10.0,
            "platformFeePercentage": 5.0,
            "gasFeePercentage": 0.2,
            "netPercentage": 4.8,
        }

    def test_exclusive_one_token(self, calculator):
        """Exclusive pays 25% royalty."""
        breakdown = calculator.compute_breakdown(ONE_TOKEN, "exclusive")
        assert breakdown.net_amount == 198 * ONE_TOKEN // 1000

    def test_free_tier_nets_zero(self, calculator):
        """Free carries no royalty, and net never goes negative."""
        breakdown = calculator.compute_breakdown(ONE_TOKEN, "free")
        assert breakdown.royalty_amount == 0
        assert breakdown.net_amount == 0

    def test_parts_sum_to_revenue(self, calculator):
        """Floor division leaves the rounding remainder in remaining_amount."""
        breakdown = calculator.compute_breakdown(999, "premium")
        assert (breakdown.royalty_amount, breakdown.platform_fee, breakdown.reader_rewards) == (
            99,
            49,
            29,
        )
        assert breakdown.remaining_amount == 822
        assert (
            breakdown.royalty_amount
            + breakdown.platform_fee
            + breakdown.reader_rewards
            + breakdown.remaining_amount
            == 999
        )

    def test_optional_fees(self, calculator):
        """Gas and platform fee can each be left out."""
        breakdown = calculator.compute_breakdown(
            ONE_TOKEN, "premium", include_gas_fee=False, include_platform_fee=False
        )
        assert breakdown.platform_fee == 0
        assert breakdown.gas_fee_estimate == 0
        assert breakdown.net_amount == ONE_TOKEN // 10

    def test_zero_revenue(self, calculator):
        """Zero revenue produces an all-zero breakdown."""
        breakdown = calculator.compute_breakdown(0, "exclusive")
        assert breakdown.net_amount == 0
        assert breakdown.percentages["netPercentage"] == 0.0

    @pytest.mark.parametrize("revenue", [-1, 1.5, True, 10_001 * ONE_TOKEN])
    def test_invalid_revenue(self, calculator, revenue):
        """Negative, non-integer and oversized revenue is rejected."""
        with pytest.raises(InvalidAmountError):
            calculator.compute_breakdown(revenue, "premium")

    def test_unknown_tier(self, calculator):
        with pytest.raises(InvalidTierError):
            calculator.compute_breakdown(ONE_TOKEN, "gold")

    def test_to_dict_uses_strings(self, calculator):
        """Serialized amounts are decimal strings with formatted companions."""
        result = calculator.compute_breakdown(ONE_TOKEN, "premium").to_dict()
        assert result["netAmount"] == str(48 * ONE_TOKEN // 1000)
        assert result["netAmountFormatted"] == "0.048"
        assert result["licenseTier"] == "premium"
        assert result["breakdown"]["royaltyPercentage"] == 10.0


class TestCompareTiers:
    """Tests for tier comparison."""

    def test_recommends_exclusive_from_premium(self, calculator):
        """The highest net tier is suggested."""
        comparison = calculator.compare_tiers("premium", ONE_TOKEN, subject_id="ch-1")

        assert comparison.suggested_tier is LicenseTier.EXCLUSIVE
        assert comparison.potential_increase == 15 * ONE_TOKEN // 100
        assert comparison.tiers[LicenseTier.EXCLUSIVE].recommended is True
        assert comparison.tiers[LicenseTier.PREMIUM].recommended is False
        assert comparison.tiers[LicenseTier.FREE].difference == -48 * ONE_TOKEN // 1000

    def test_current_tier_optimal(self, calculator):
        """Already on the best tier means no increase."""
        comparison = calculator.compare_tiers("exclusive", ONE_TOKEN)
        assert comparison.suggested_tier is LicenseTier.EXCLUSIVE
        assert comparison.potential_increase == 0
        assert comparison.reasoning[0] == "Current license tier is optimal for your revenue level"

    def test_ties_prefer_lower_tier(self, calculator):
        """When every tier nets zero the broadest tier wins."""
        comparison = calculator.compare_tiers("exclusive", 0)
        assert comparison.suggested_tier is LicenseTier.FREE

    def test_to_dict(self, calculator):
        result = calculator.compare_tiers("premium", ONE_TOKEN, "ch-1").to_dict()
        assert result["chapterId"] == "ch-1"
        assert result["recommendation"]["suggestedTier"] == "exclusive"
        assert set(result["tiers"]) == {"free", "premium", "exclusive"}


class TestPreview:
    """Tests for claim previews."""

    def test_consider_upgrade(self, calculator):
        """A moderate premium net with a better tier available suggests upgrading."""
        preview = calculator.preview("ch-1", "0xabc", "premium", ONE_TOKEN)
        assert preview.recommended_action is PreviewAction.CONSIDER_TIER_UPGRADE

    def test_claim_now(self, calculator):
        """A net above the optimal amount says claim now."""
        preview = calculator.preview("ch-1", "0xabc", "exclusive", ONE_TOKEN)
        assert preview.recommended_action is PreviewAction.CLAIM_NOW

    def test_wait_when_gas_dominates(self, calculator):
        """A net below the viable amount says wait."""
        preview = calculator.preview("ch-1", "0xabc", "premium", ONE_TOKEN // 10)
        assert preview.breakdown.net_amount == 3 * ONE_TOKEN // 1000
        assert preview.recommended_action is PreviewAction.WAIT_FOR_MORE

    def test_wait_below_minimum(self, calculator):
        """Nothing claimable says wait, with the minimum named."""
        preview = calculator.preview("ch-1", "0xabc", "free", ONE_TOKEN)
        assert preview.recommended_action is PreviewAction.WAIT_FOR_MORE
        assert preview.reasoning[0] == "Amount below minimum claim threshold"

    def test_to_dict(self, calculator):
        result = calculator.preview("ch-1", "0xabc", "premium", ONE_TOKEN).to_dict()
        assert result["recommendedAction"] == "consider_tier_upgrade"
        assert result["netRoyaltyFormatted"] == "0.048"
        assert "lastUpdated" in result


class TestEconomics:
    """Tests for monthly economics and break-even analysis."""

    def test_exclusive_economics(self, calculator):
        """Exclusive at 100 reads returns one token a month."""
        economics = calculator.calculate_economics("exclusive", 100)
        assert economics.monthly_royalty == ONE_TOKEN
        assert economics.estimated_roi == 120.0

    def test_premium_and_free_economics(self, calculator):
        """Unlock revenue no larger than read rewards yields no royalty."""
        assert calculator.calculate_economics("premium", 100).monthly_royalty == 0
        assert calculator.calculate_economics("free", 100).monthly_royalty == 0

    def test_negative_reads(self, calculator):
        with pytest.raises(InvalidAmountError):
            calculator.calculate_economics("premium", -1)

    def test_break_even(self, calculator):
        """One token at one token a month breaks even in a month."""
        analysis = calculator.break_even_analysis(ONE_TOKEN, "exclusive", 100)
        assert analysis.break_even_months == 1.0
        assert analysis.break_even_reads == 100
        assert analysis.roi_12_months == 1100.0

    def test_never_breaks_even(self, calculator):
        """No royalty means no break-even point."""
        analysis = calculator.break_even_analysis(ONE_TOKEN, "premium", 100)
        assert analysis.break_even_months is None
        assert analysis.break_even_reads is None
        assert analysis.roi_12_months == -100.0

    def test_break_even_requires_positive_cost(self, calculator):
        with pytest.raises(InvalidAmountError):
            calculator.break_even_analysis(0, "exclusive")

    def test_serialized_keys(self, calculator):
        economics = calculator.calculate_economics("exclusive").to_dict()
        assert economics["monthlyRoyaltyFormatted"] == "1.0"
        assert economics["estimatedROI"] == 120.0
        analysis = calculator.break_even_analysis(ONE_TOKEN, "exclusive").to_dict()
        assert set(analysis) >= {"breakEvenTime", "breakEvenReads", "roi12Months"}

    def test_tier_catalogue(self, calculator):
        """The catalogue lists tiers broadest first."""
        catalogue = calculator.tier_catalogue()
        assert [entry["tier"] for entry in catalogue] == ["free", "premium", "exclusive"]
        assert catalogue[1]["remainingRate"] == 82
        assert catalogue[2]["unlockPrice"] == str(5 * ONE_TOKEN // 100)
