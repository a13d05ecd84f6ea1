"""Pluggable rules deciding what a warranty covers."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from warranty.models import WarrantyBarcode

COVERAGE_FULL = "full"
COVERAGE_NONE = "not_covered"


@dataclass(frozen=True)
class CoverageDecision:
    covered: bool
    coverage_type: str
    estimated_cost: Decimal
    message: str
    recommendations: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)


class CoveragePolicy(Protocol):
    def coverage_for(self, barcode: WarrantyBarcode) -> Dict[str, Any]: ...

    def assess(
        self,
        barcode: WarrantyBarcode,
        issue_type: str,
        description: Optional[str] = None,
        can_claim: bool = True,
    ) -> CoverageDecision: ...


class DefaultCoveragePolicy:
    """
    Standard manufacturer terms.

    Everything is covered except the excluded damage classes, which are quoted
    at a flat repair estimate.
    """

    covered_components = ("hardware", "software", "battery", "screen")
    excluded_components = ("water_damage", "physical_abuse")
    terms = (
        "Must provide proof of purchase",
        "Damage must be reported within 30 days",
    )

    def __init__(self, uncovered_estimate: Decimal = Decimal("150.00")) -> None:
        self.uncovered_estimate = uncovered_estimate

    def coverage_for(self, barcode: WarrantyBarcode) -> Dict[str, Any]:
        return {
            "coverage_type": "comprehensive",
            "covered_components": list(self.covered_components),
            "excluded_components": list(self.excluded_components),
            "repair_coverage": True,
            "replacement_coverage": True,
            "labor_coverage": True,
            "parts_coverage": True,
            "terms": list(self.terms),
        }

    def assess(
        self,
        barcode: WarrantyBarcode,
        issue_type: str,
        description: Optional[str] = None,
        can_claim: bool = True,
    ) -> CoverageDecision:
        issue = (issue_type or "").strip().lower()
        if not can_claim:
            return CoverageDecision(
                covered=False,
                coverage_type=COVERAGE_NONE,
                estimated_cost=self.uncovered_estimate,
                message="This warranty is not active, so the issue is not covered",
                recommendations=["Contact the retailer about out-of-warranty service"],
                next_steps=["Request a paid repair quote"],
            )
        if issue in self.excluded_components:
            return CoverageDecision(
                covered=False,
                coverage_type=COVERAGE_NONE,
                estimated_cost=self.uncovered_estimate,
                message="This issue is excluded from warranty coverage",
                recommendations=[
                    "Contact an authorized service center for a paid repair",
                    "Check whether your insurance covers accidental damage",
                ],
                next_steps=["Request a paid repair quote"],
            )
        return CoverageDecision(
            covered=True,
            coverage_type=COVERAGE_FULL,
            estimated_cost=Decimal("0.00"),
            message="This issue is fully covered under your warranty",
            recommendations=[
                "Back up your data before the repair",
                "Keep your proof of purchase at hand",
            ],
            next_steps=["Submit a warranty claim", "Schedule a repair appointment"],
        )
