"""
Royalty Engine - Tiered Royalty Calculator

Pure functions mapping (revenue, license tier) to a fee/royalty breakdown.
No I/O; every result is deterministic for its inputs.

Features:
- Per-tier royalty, platform fee and reader reward rates
- Breakdown with gas estimate and net amount floored at zero
- Tier comparison with a recommended tier
- Claim preview with claim_now / wait_for_more / consider_tier_upgrade
- Monthly economics and break-even analysis

Usage:
    from royalty_calculator import RoyaltyCalculator, LicenseTier

    calculator = RoyaltyCalculator()
    breakdown = calculator.compute_breakdown(10**18, LicenseTier.PREMIUM)
    print(breakdown.net_amount)
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from errors import ConfigurationError, InvalidAmountError, InvalidTierError
from token_units import ONE_TOKEN, format_token_amount

# =============================================================================
# Constants
# =============================================================================

# Gas estimate for one claim transaction
DEFAULT_GAS_FEE_ESTIMATE = 2 * ONE_TOKEN // 1000  # 0.002

MINIMUM_CLAIM_AMOUNT = ONE_TOKEN // 1000  # 0.001
MAXIMUM_CLAIM_AMOUNT = 10_000 * ONE_TOKEN

# Preview thresholds, compared against the net amount
MINIMUM_VIABLE_CLAIM = ONE_TOKEN // 100  # 0.01
OPTIMAL_CLAIM = ONE_TOKEN // 10  # 0.1
TIER_UPGRADE_THRESHOLD = ONE_TOKEN // 100  # 0.01

# Economics model
AVERAGE_MONTHLY_READS = 100
AVERAGE_READ_REWARD = ONE_TOKEN // 100  # 0.01 per read
ESTIMATED_CREATION_COST = ONE_TOKEN // 10  # 0.1


class LicenseTier(Enum):
    """License classes, ordered from broadest to most restrictive access."""

    FREE = "free"
    PREMIUM = "premium"
    EXCLUSIVE = "exclusive"

    @classmethod
    def parse(cls, value: "LicenseTier | str") -> "LicenseTier":
        """Coerce a tier name into a LicenseTier."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidTierError(
                f"Unknown license tier: {value}",
                details={"validTiers": [t.value for t in cls]},
            ) from None

    @property
    def rank(self) -> int:
        return list(LicenseTier).index(self)


@dataclass(frozen=True)
class TierRates:
    """Percentages (0-100) applied to revenue for one tier."""

    royalty_rate: int
    platform_fee_rate: int
    reader_reward_rate: int
    description: str = ""
    unlock_price: int = 0

    @property
    def remaining_rate(self) -> int:
        return 100 - self.royalty_rate - self.platform_fee_rate - self.reader_reward_rate


DEFAULT_TIER_RATES: dict[LicenseTier, TierRates] = {
    LicenseTier.FREE: TierRates(
        royalty_rate=0,
        platform_fee_rate=5,
        reader_reward_rate=2,
        description="Attribution-only license with no monetary exchange",
        unlock_price=0,
    ),
    LicenseTier.PREMIUM: TierRates(
        royalty_rate=10,
        platform_fee_rate=5,
        reader_reward_rate=3,
        description="Commercial license with revenue sharing",
        unlock_price=ONE_TOKEN // 100,
    ),
    LicenseTier.EXCLUSIVE: TierRates(
        royalty_rate=25,
        platform_fee_rate=5,
        reader_reward_rate=5,
        description="Exclusive commercial rights with premium revenue sharing",
        unlock_price=5 * ONE_TOKEN // 100,
    ),
}


def validate_tier_table(table: dict[LicenseTier, TierRates]) -> None:
    """
    Check a tier-rate table before it is used.

    Raises:
        ConfigurationError: If a tier is missing, a rate is outside 0-100,
            or a tier's rates add up to more than 100%
    """
    missing = [tier.value for tier in LicenseTier if tier not in table]
    if missing:
        raise ConfigurationError(
            f"Tier table is missing tiers: {', '.join(missing)}",
            details={"missing": missing},
        )

    for tier, rates in table.items():
        for name in ("royalty_rate", "platform_fee_rate", "reader_reward_rate"):
            value = getattr(rates, name)
            if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 100:
                raise ConfigurationError(
                    f"{tier.value}.{name} must be an integer percentage between 0 and 100",
                    details={"tier": tier.value, "field": name, "value": value},
                )
        if rates.remaining_rate < 0:
            raise ConfigurationError(
                f"Rates for tier {tier.value} exceed 100%",
                details={"tier": tier.value, "total": 100 - rates.remaining_rate},
            )
        if rates.unlock_price < 0:
            raise ConfigurationError(f"{tier.value}.unlock_price cannot be negative")


def _percentage(part: int, whole: int) -> float:
    """Share of whole as a percentage with two decimals (integer math)."""
    if whole <= 0:
        return 0.0
    return (part * 10000 // whole) / 100


# =============================================================================
# Result types
# =============================================================================


@dataclass
class RoyaltyBreakdown:
    """Split of one revenue amount. All amounts in base units."""

    total_revenue: int
    tier: LicenseTier
    royalty_amount: int
    platform_fee: int
    reader_rewards: int
    remaining_amount: int
    gas_fee_estimate: int
    net_amount: int

    @property
    def percentages(self) -> dict[str, float]:
        return {
            "royaltyPercentage": _percentage(self.royalty_amount, self.total_revenue),
            "platformFeePercentage": _percentage(self.platform_fee, self.total_revenue),
            "gasFeePercentage": _percentage(self.gas_fee_estimate, self.total_revenue),
            "netPercentage": _percentage(self.net_amount, self.total_revenue),
        }

    def to_dict(self) -> dict[str, Any]:
        amounts = {
            "totalRevenue": self.total_revenue,
            "royaltyAmount": self.royalty_amount,
            "platformFee": self.platform_fee,
            "readerRewards": self.reader_rewards,
            "remainingAmount": self.remaining_amount,
            "gasFeeEstimate": self.gas_fee_estimate,
            "netAmount": self.net_amount,
        }
        result: dict[str, Any] = {"licenseTier": self.tier.value}
        for key, value in amounts.items():
            result[key] = str(value)
            result[f"{key}Formatted"] = format_token_amount(value)
        result["breakdown"] = self.percentages
        return result


@dataclass
class TierProjection:
    """One tier's projected outcome inside a comparison."""

    tier: LicenseTier
    royalty_rate: int
    projected_royalty: int
    platform_fee: int
    net_royalty: int
    difference: int
    difference_percentage: float
    recommended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "royaltyRate": self.royalty_rate,
            "projectedRoyalty": str(self.projected_royalty),
            "projectedRoyaltyFormatted": format_token_amount(self.projected_royalty),
            "platformFee": str(self.platform_fee),
            "netRoyalty": str(self.net_royalty),
            "netRoyaltyFormatted": format_token_amount(self.net_royalty),
            "difference": str(self.difference),
            "differenceFormatted": format_token_amount(self.difference),
            "differencePercentage": self.difference_percentage,
            "recommended": self.recommended,
        }


@dataclass
class TierComparison:
    """Per-tier projections for one revenue amount plus a recommendation."""

    subject_id: str | None
    current_tier: LicenseTier
    revenue: int
    tiers: dict[LicenseTier, TierProjection]
    suggested_tier: LicenseTier
    reasoning: list[str]
    potential_increase: int
    potential_increase_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapterId": self.subject_id,
            "currentTier": self.current_tier.value,
            "currentRevenue": str(self.revenue),
            "tiers": {tier.value: proj.to_dict() for tier, proj in self.tiers.items()},
            "recommendation": {
                "suggestedTier": self.suggested_tier.value,
                "reasoning": list(self.reasoning),
                "potentialIncrease": str(self.potential_increase),
                "potentialIncreaseFormatted": format_token_amount(self.potential_increase),
                "potentialIncreasePercentage": self.potential_increase_percentage,
            },
        }


class PreviewAction(Enum):
    """Recommended next step for an author looking at a claim."""

    CLAIM_NOW = "claim_now"
    WAIT_FOR_MORE = "wait_for_more"
    CONSIDER_TIER_UPGRADE = "consider_tier_upgrade"


@dataclass
class RoyaltyPreview:
    """What a claim would pay today and what to do about it."""

    subject_id: str
    author_address: str
    breakdown: RoyaltyBreakdown
    recommended_action: PreviewAction
    reasoning: list[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        b = self.breakdown
        return {
            "chapterId": self.subject_id,
            "authorAddress": self.author_address,
            "licenseTier": b.tier.value,
            "currentRevenue": str(b.total_revenue),
            "projectedRoyalty": str(b.royalty_amount),
            "projectedRoyaltyFormatted": format_token_amount(b.royalty_amount),
            "platformFee": str(b.platform_fee),
            "platformFeeFormatted": format_token_amount(b.platform_fee),
            "estimatedGasFee": str(b.gas_fee_estimate),
            "estimatedGasFeeFormatted": format_token_amount(b.gas_fee_estimate),
            "netRoyalty": str(b.net_amount),
            "netRoyaltyFormatted": format_token_amount(b.net_amount),
            "recommendedAction": self.recommended_action.value,
            "reasoning": list(self.reasoning),
            "lastUpdated": self.generated_at.isoformat(),
        }


@dataclass
class RoyaltyEconomics:
    """Monthly revenue model for a tier."""

    tier: LicenseTier
    royalty_rate: int
    platform_fee_rate: int
    reader_reward_rate: int
    unlock_price: int
    read_reward: int
    monthly_reads: int
    projected_monthly_revenue: int
    monthly_royalty: int
    estimated_roi: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "licenseTier": self.tier.value,
            "royaltyRate": self.royalty_rate,
            "platformFeeRate": self.platform_fee_rate,
            "readerRewardRate": self.reader_reward_rate,
            "baseUnlockPrice": str(self.unlock_price),
            "readReward": str(self.read_reward),
            "monthlyReads": self.monthly_reads,
            "projectedMonthlyRevenue": str(self.projected_monthly_revenue),
            "monthlyRoyalty": str(self.monthly_royalty),
            "monthlyRoyaltyFormatted": format_token_amount(self.monthly_royalty),
            "estimatedROI": self.estimated_roi,
        }


@dataclass
class BreakEvenAnalysis:
    """How long a content unit takes to pay back its creation cost."""

    creation_cost: int
    monthly_royalty: int
    break_even_months: float | None
    break_even_reads: int | None
    roi_12_months: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "creationCost": str(self.creation_cost),
            "monthlyRoyalty": str(self.monthly_royalty),
            "breakEvenTime": self.break_even_months,
            "breakEvenReads": self.break_even_reads,
            "roi12Months": self.roi_12_months,
        }


# =============================================================================
# Calculator
# =============================================================================


class RoyaltyCalculator:
    """
    Tiered royalty calculator.

    The tier table is validated on construction, so a calculator that
    exists always has consistent rates.
    """

    def __init__(
        self,
        tier_rates: dict[LicenseTier, TierRates] | None = None,
        gas_fee_estimate: int = DEFAULT_GAS_FEE_ESTIMATE,
        maximum_revenue: int = MAXIMUM_CLAIM_AMOUNT,
        minimum_claim: int = MINIMUM_CLAIM_AMOUNT,
    ):
        self.tier_rates = dict(tier_rates or DEFAULT_TIER_RATES)
        validate_tier_table(self.tier_rates)
        if gas_fee_estimate < 0:
            raise ConfigurationError("Gas fee estimate cannot be negative")
        self.gas_fee_estimate = gas_fee_estimate
        self.maximum_revenue = maximum_revenue
        self.minimum_claim = minimum_claim

    def rates_for(self, tier: LicenseTier | str) -> TierRates:
        return self.tier_rates[LicenseTier.parse(tier)]

    def _validate_revenue(self, total_revenue: int) -> None:
        if not isinstance(total_revenue, int) or isinstance(total_revenue, bool):
            raise InvalidAmountError(
                "Revenue must be an integer amount in base units",
                details={"value": repr(total_revenue)},
            )
        if total_revenue < 0:
            raise InvalidAmountError("Total revenue cannot be negative")
        if total_revenue > self.maximum_revenue:
            raise InvalidAmountError(
                f"Total revenue exceeds maximum claim amount of "
                f"{format_token_amount(self.maximum_revenue)} tokens",
                details={"maximum": str(self.maximum_revenue)},
            )

    def compute_breakdown(
        self,
        total_revenue: int,
        tier: LicenseTier | str,
        include_gas_fee: bool = True,
        include_platform_fee: bool = True,
    ) -> RoyaltyBreakdown:
        """
        Split a revenue amount according to a tier's rates.

        Args:
            total_revenue: Revenue in base units
            tier: License tier
            include_gas_fee: Deduct the gas estimate from the net amount
            include_platform_fee: Charge the tier's platform fee

        Returns:
            RoyaltyBreakdown whose royalty, fee, rewards and remainder sum to
            total_revenue, and whose net amount is never negative

        Raises:
            InvalidTierError: Unknown tier
            InvalidAmountError: Negative, non-integer or oversized revenue
        """
        license_tier = LicenseTier.parse(tier)
        self._validate_revenue(total_revenue)
        rates = self.tier_rates[license_tier]

        royalty = total_revenue * rates.royalty_rate // 100
        fee_rate = rates.platform_fee_rate if include_platform_fee else 0
        platform_fee = total_revenue * fee_rate // 100
        reader_rewards = total_revenue * rates.reader_reward_rate // 100
        remaining = total_revenue - royalty - platform_fee - reader_rewards
        gas = self.gas_fee_estimate if include_gas_fee else 0

        return RoyaltyBreakdown(
            total_revenue=total_revenue,
            tier=license_tier,
            royalty_amount=royalty,
            platform_fee=platform_fee,
            reader_rewards=reader_rewards,
            remaining_amount=remaining,
            gas_fee_estimate=gas,
            net_amount=max(0, royalty - platform_fee - gas),
        )

    def compare_tiers(
        self,
        current_tier: LicenseTier | str,
        revenue: int,
        subject_id: str | None = None,
    ) -> TierComparison:
        """
        Project every tier for the same revenue and recommend one.

        The recommended tier has the highest net amount; ties go to the
        lower (more accessible) tier.
        """
        current = LicenseTier.parse(current_tier)
        breakdowns = {tier: self.compute_breakdown(revenue, tier) for tier in LicenseTier}
        current_net = breakdowns[current].net_amount

        projections: dict[LicenseTier, TierProjection] = {}
        for tier, breakdown in breakdowns.items():
            difference = breakdown.net_amount - current_net
            projections[tier] = TierProjection(
                tier=tier,
                royalty_rate=self.tier_rates[tier].royalty_rate,
                projected_royalty=breakdown.royalty_amount,
                platform_fee=breakdown.platform_fee,
                net_royalty=breakdown.net_amount,
                difference=difference,
                difference_percentage=_signed_percentage(difference, revenue),
            )

        suggested = current
        best_net = -1
        for tier in sorted(LicenseTier, key=lambda t: t.rank):
            if breakdowns[tier].net_amount > best_net:
                best_net = breakdowns[tier].net_amount
                suggested = tier
        projections[suggested].recommended = True

        potential_increase = best_net - current_net
        return TierComparison(
            subject_id=subject_id,
            current_tier=current,
            revenue=revenue,
            tiers=projections,
            suggested_tier=suggested,
            reasoning=_tier_reasoning(current, suggested, potential_increase),
            potential_increase=potential_increase,
            potential_increase_percentage=_signed_percentage(potential_increase, current_net),
        )

    def preview(
        self,
        subject_id: str,
        author_address: str,
        tier: LicenseTier | str,
        revenue: int,
    ) -> RoyaltyPreview:
        """Breakdown plus a recommended action based on the net amount."""
        breakdown = self.compute_breakdown(revenue, tier)
        net = breakdown.net_amount
        reasoning: list[str] = []

        if net < self.minimum_claim:
            action = PreviewAction.WAIT_FOR_MORE
            reasoning.append("Amount below minimum claim threshold")
            reasoning.append(
                f"Wait until you have at least {format_token_amount(self.minimum_claim)} tokens"
            )
        elif net < MINIMUM_VIABLE_CLAIM:
            action = PreviewAction.WAIT_FOR_MORE
            reasoning.append("Gas fees will consume a significant portion of the claim")
            reasoning.append("Consider waiting for more revenue to accumulate")
        elif net >= OPTIMAL_CLAIM:
            action = PreviewAction.CLAIM_NOW
            reasoning.append("Optimal claim amount reached")
        else:
            comparison = self.compare_tiers(breakdown.tier, revenue, subject_id)
            if comparison.potential_increase > TIER_UPGRADE_THRESHOLD:
                action = PreviewAction.CONSIDER_TIER_UPGRADE
                reasoning.append(
                    f"Consider switching to the {comparison.suggested_tier.value} tier"
                )
                reasoning.append(
                    f"Potential increase: {format_token_amount(comparison.potential_increase)} tokens"
                )
            else:
                action = PreviewAction.CLAIM_NOW
                reasoning.append("Reasonable amount available for claiming")

        return RoyaltyPreview(
            subject_id=subject_id,
            author_address=author_address,
            breakdown=breakdown,
            recommended_action=action,
            reasoning=reasoning,
        )

    def calculate_economics(
        self, tier: LicenseTier | str, monthly_reads: int = AVERAGE_MONTHLY_READS
    ) -> RoyaltyEconomics:
        """Model a month of unlocks and read rewards for one content unit."""
        license_tier = LicenseTier.parse(tier)
        if monthly_reads < 0:
            raise InvalidAmountError("Monthly reads cannot be negative")
        rates = self.tier_rates[license_tier]

        unlock_revenue = rates.unlock_price * monthly_reads
        read_reward_cost = AVERAGE_READ_REWARD * monthly_reads
        projected = unlock_revenue - read_reward_cost
        monthly_royalty = max(0, projected * rates.royalty_rate // 100)

        return RoyaltyEconomics(
            tier=license_tier,
            royalty_rate=rates.royalty_rate,
            platform_fee_rate=rates.platform_fee_rate,
            reader_reward_rate=rates.reader_reward_rate,
            unlock_price=rates.unlock_price,
            read_reward=AVERAGE_READ_REWARD,
            monthly_reads=monthly_reads,
            projected_monthly_revenue=projected,
            monthly_royalty=monthly_royalty,
            # Annual royalty as a multiple of the creation cost
            estimated_roi=(monthly_royalty * 1200 // ESTIMATED_CREATION_COST) / 100,
        )

    def break_even_analysis(
        self,
        creation_cost: int,
        tier: LicenseTier | str,
        monthly_reads: int = AVERAGE_MONTHLY_READS,
    ) -> BreakEvenAnalysis:
        """Months and reads until royalties cover creation_cost."""
        if creation_cost <= 0:
            raise InvalidAmountError("Creation cost must be positive")
        economics = self.calculate_economics(tier, monthly_reads)
        monthly = economics.monthly_royalty

        if monthly <= 0:
            return BreakEvenAnalysis(
                creation_cost=creation_cost,
                monthly_royalty=0,
                break_even_months=None,
                break_even_reads=None,
                roi_12_months=-100.0,
            )

        months = creation_cost / monthly
        return BreakEvenAnalysis(
            creation_cost=creation_cost,
            monthly_royalty=monthly,
            break_even_months=round(months, 2),
            break_even_reads=math.ceil(months * monthly_reads),
            roi_12_months=((monthly * 12 - creation_cost) * 10000 // creation_cost) / 100,
        )

    def tier_catalogue(self) -> list[dict[str, Any]]:
        return [
            {
                "tier": tier.value,
                "royaltyRate": rates.royalty_rate,
                "platformFeeRate": rates.platform_fee_rate,
                "readerRewardRate": rates.reader_reward_rate,
                "remainingRate": rates.remaining_rate,
                "unlockPrice": str(rates.unlock_price),
                "description": rates.description,
            }
            for tier, rates in sorted(self.tier_rates.items(), key=lambda item: item[0].rank)
        ]


def _signed_percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    sign = -1 if part < 0 else 1
    return sign * (abs(part) * 10000 // whole) / 100


def _tier_reasoning(
    current: LicenseTier, suggested: LicenseTier, potential_increase: int
) -> list[str]:
    if suggested == current:
        return [
            "Current license tier is optimal for your revenue level",
            "No immediate changes recommended",
        ]
    if potential_increase <= 0:
        return ["Current tier provides the best net returns"]

    increase = format_token_amount(potential_increase)
    if suggested.rank > current.rank:
        return [
            f"Switching to {suggested.value} could increase earnings by {increase} tokens",
            "Consider whether reduced accessibility is acceptable for higher returns",
        ]
    return [
        f"Switching to {suggested.value} could increase earnings by {increase} tokens",
        "A broader license may also drive more long-term readership",
    ]
