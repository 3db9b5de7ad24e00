"""Category spec requirements and listing status derivation."""
import re
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from marketplace.models.product import CategorySpecRule
from marketplace.models.shop import ListingStatus

# Used when a category has no active CategorySpecRule row.
DEFAULT_SPEC_REQUIREMENTS: dict[str, list[str]] = {
    "smartphones": ["ram", "storage", "screen_size"],
    "phones": ["ram", "storage", "screen_size"],
    "laptops": ["ram", "storage", "processor", "screen_size"],
    "notebooks": ["ram", "storage", "processor", "screen_size"],
    "tablets": ["ram", "storage", "screen_size"],
    "tvs": ["screen_size", "resolution"],
    "televisions": ["screen_size", "resolution"],
    "cameras": ["megapixels"],
    "smartwatches": ["display_type"],
    "headphones": ["type"],
}


def normalize_spec_key(key: str) -> str:
    """'Screen Size' -> 'screen_size', 'RAM' -> 'ram'."""
    key = re.sub(r"\s+", "_", key.strip().lower())
    return re.sub(r"[^\w]", "", key)


def normalize_category(name: str) -> str:
    return " ".join(name.split()).casefold()


def derive_listing_status(
    missing_specs: Iterable[str], images: Optional[list[str]]
) -> ListingStatus:
    """Specs are checked before images; a listing with both goes to review."""
    if list(missing_specs):
        return ListingStatus.NEEDS_SPECS
    if not images:
        return ListingStatus.NEEDS_IMAGES
    return ListingStatus.PENDING_REVIEW


class SpecRuleBook:
    """Snapshot of required specs per category, loaded once per operation."""

    def __init__(self, rules: dict[str, list[str]]):
        self._rules = {
            normalize_category(category): [normalize_spec_key(s) for s in specs]
            for category, specs in rules.items()
        }

    @classmethod
    def load(cls, db: Session) -> "SpecRuleBook":
        rows = (
            db.query(CategorySpecRule)
            .filter(CategorySpecRule.is_active.is_(True))
            .all()
        )
        return cls({row.category_name: list(row.required_specs or []) for row in rows})

    def required_for(self, category_name: Optional[str]) -> list[str]:
        if not category_name:
            return []

        category = normalize_category(category_name)
        if category in self._rules:
            return self._rules[category]
        if category in DEFAULT_SPEC_REQUIREMENTS:
            return DEFAULT_SPEC_REQUIREMENTS[category]

        # "Mobile Phones" -> phones; longest keyword wins so "smartphones" beats "phones"
        for keyword in sorted(DEFAULT_SPEC_REQUIREMENTS, key=len, reverse=True):
            if keyword in category:
                return DEFAULT_SPEC_REQUIREMENTS[keyword]
        return []

    def missing_specs(
        self, category_name: Optional[str], specs: Optional[dict[str, str]]
    ) -> list[str]:
        provided = {
            normalize_spec_key(key): value
            for key, value in (specs or {}).items()
            if value is not None and str(value).strip()
        }
        return [spec for spec in self.required_for(category_name) if spec not in provided]
