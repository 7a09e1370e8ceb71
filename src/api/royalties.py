"""
Royalty Engine - Royalties API Blueprint

REST API endpoints for claiming royalties and inspecting what a claim
would pay.

Provides access to:
- Claim accumulated royalties for a chapter
- Check the claimable balance (cached for 30 seconds)
- Paginated claim history with summary and analytics
- Claim previews with a per-tier comparison
- The tier catalogue and per-author statistics
"""

from flask import Blueprint, request

from claims import ClaimRequest, HistoryQuery
from errors import ValidationError
from models import validate_address
from royalty_calculator import LicenseTier
from token_units import parse_base_units

from .state import get_claims, get_engine
from .utils import arg_bool, arg_int, envelope, get_json_body, require_api_key, validate_json_schema

royalties_bp = Blueprint("royalties", __name__)


# =============================================================================
# Claims
# =============================================================================


@royalties_bp.route("/royalties/claim", methods=["POST"])
@require_api_key
def claim_royalties():
    """
    Claim the royalties accumulated for one chapter.

    Request body:
        {
            "chapterId": "chapter-1",
            "authorAddress": "0x...",
            "licenseTermsId": "terms-7",       // Optional
            "expectedAmount": "5000000000"     // Optional, base units
        }

    Returns:
        Claim result. 400 on validation errors, 409 while another claim for
        the chapter runs, 429 when rate limited, 500 on ledger failures.
    """
    data = get_json_body()
    validate_json_schema(
        data,
        required_fields={"chapterId": str, "authorAddress": str},
        optional_fields={"licenseTermsId": str, "expectedAmount": (str, int)},
        max_lengths={"chapterId": 256, "licenseTermsId": 256},
    )
    result = get_claims().process_claim(ClaimRequest.from_dict(data))

    headers = None
    if result.error and "retryAfter" in result.error.get("details", {}):
        headers = {"Retry-After": str(result.error["details"]["retryAfter"])}
    return envelope(
        data=result.to_dict(),
        error=result.error,
        success=result.success,
        status=result.http_status,
        headers=headers,
    )


@royalties_bp.route("/royalties/claimable/<chapter_id>", methods=["GET"])
def get_claimable(chapter_id):
    """
    Check what an author can claim for a chapter.

    Query params:
        authorAddress: Wallet address (required)
        refresh: true to bypass the 30 second cache
    """
    author = request.args.get("authorAddress")
    if not author:
        raise ValidationError("authorAddress is required", details={"field": "authorAddress"})
    check = get_claims().check_claimable(chapter_id, author, refresh=arg_bool("refresh"))
    return envelope(check.to_dict())


@royalties_bp.route("/royalties/history/<author_address>", methods=["GET"])
def get_history(author_address):
    """
    Paginated claim history for an author, newest first.

    Query params:
        page, limit (max 100), status, chapterId, licenseTier,
        startDate, endDate (ISO-8601), includeAnalytics
    """
    query = HistoryQuery.from_args(request.args)
    page = get_claims().get_history(author_address, query)
    return envelope(page.to_dict())


@royalties_bp.route("/royalties/statistics/<author_address>", methods=["GET"])
def get_statistics(author_address):
    """Lifetime claim totals for an author."""
    return envelope(get_claims().get_statistics(author_address))


# =============================================================================
# Previews and tiers
# =============================================================================


@royalties_bp.route("/royalties/preview", methods=["GET"])
def preview_claim():
    """
    Preview a claim and compare license tiers.

    Query params:
        chapterId: Chapter identifier (required)
        authorAddress: Wallet address (required)
        licenseTier: free | premium | exclusive (defaults to the ledger's tier)
        currentRevenue: Revenue in base units (defaults to the claimable amount)
    """
    subject_id = request.args.get("chapterId")
    if not subject_id:
        raise ValidationError("chapterId is required", details={"field": "chapterId"})
    author = validate_address(request.args.get("authorAddress"))
    tier = request.args.get("licenseTier")
    revenue = request.args.get("currentRevenue")

    if revenue is None or tier is None:
        check = get_claims().check_claimable(subject_id, author)
        tier = tier or check.license_tier
        revenue = check.claimable_amount if revenue is None else parse_base_units(revenue)
    else:
        revenue = parse_base_units(revenue)

    calculator = get_engine().calculator
    preview = calculator.preview(subject_id, author, LicenseTier.parse(tier), revenue)
    comparison = calculator.compare_tiers(preview.breakdown.tier, revenue, subject_id)
    return envelope(
        {
            **preview.to_dict(),
            "breakdown": preview.breakdown.to_dict(),
            "tierComparison": comparison.to_dict(),
        }
    )


@royalties_bp.route("/royalties/tiers", methods=["GET"])
def list_tiers():
    """
    The license tier catalogue with monthly economics.

    Query params:
        monthlyReads: Reads per month used for the projection (default 100)
    """
    monthly_reads = arg_int("monthlyReads", 100, minimum=0, maximum=10_000_000)
    calculator = get_engine().calculator
    return envelope(
        {
            "tiers": calculator.tier_catalogue(),
            "economics": {
                tier.value: calculator.calculate_economics(tier, monthly_reads).to_dict()
                for tier in LicenseTier
            },
        }
    )


@royalties_bp.route("/royalties/break-even", methods=["GET"])
def break_even():
    """
    Months and reads until royalties cover a creation cost.

    Query params:
        creationCost: Cost in base units (required)
        licenseTier: Tier to project (default premium)
        monthlyReads: Reads per month (default 100)
    """
    cost = request.args.get("creationCost")
    if cost is None:
        raise ValidationError("creationCost is required", details={"field": "creationCost"})
    analysis = get_engine().calculator.break_even_analysis(
        parse_base_units(cost),
        request.args.get("licenseTier", LicenseTier.PREMIUM.value),
        arg_int("monthlyReads", 100, minimum=0, maximum=10_000_000),
    )
    return envelope(analysis.to_dict())
