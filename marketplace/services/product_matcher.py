"""Resolve seller product names against the shared catalog."""
import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from marketplace.config import Settings
from marketplace.models.product import CatalogProduct, CatalogProductStatus
from marketplace.models.upload_batch import MatchKind

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]|_")


def normalize_text(text: Optional[str]) -> str:
    """Case-fold, turn punctuation into spaces and collapse whitespace."""
    if not text:
        return ""
    return " ".join(_PUNCTUATION.sub(" ", text.casefold()).split())


def qualified_name(name: str, brand: Optional[str] = None) -> str:
    """Prefix the brand unless the name already carries it."""
    normalized = normalize_text(name)
    normalized_brand = normalize_text(brand)
    if normalized_brand and normalized_brand not in normalized:
        return f"{normalized_brand} {normalized}"
    return normalized


def similarity(a: str, b: str) -> float:
    """Mean of the edit-distance ratio and token Jaccard overlap, in [0, 1]."""
    if not a or not b:
        return 0.0
    ratio = SequenceMatcher(None, a, b).ratio()
    tokens_a, tokens_b = set(a.split()), set(b.split())
    jaccard = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    return round((ratio + jaccard) / 2, 4)


@dataclass(frozen=True)
class MatchPolicy:
    min_similarity: float = 0.6
    high_confidence: float = 0.85
    ambiguity_margin: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchPolicy":
        return cls(
            min_similarity=settings.match_min_similarity,
            high_confidence=settings.match_high_confidence,
            ambiguity_margin=settings.match_ambiguity_margin,
        )


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    brand: Optional[str] = None


@dataclass(frozen=True)
class MatchDecision:
    kind: MatchKind
    product_id: Optional[str] = None
    confidence: float = 0.0
    candidate_ids: tuple[str, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.kind in (MatchKind.EXACT, MatchKind.FUZZY)


class ProductMatcher:
    """
    Matcher over a fixed catalog snapshot.

    Decisions depend only on the snapshot and the input text. Candidates are
    ordered by (score desc, id asc) so ties never depend on load order.
    """

    def __init__(self, catalog: Iterable[CatalogEntry], policy: Optional[MatchPolicy] = None):
        self.policy = policy or MatchPolicy()
        self._entries = sorted(catalog, key=lambda entry: entry.id)
        self._names = {entry.id: entry.name for entry in self._entries}
        self._qualified = {
            entry.id: qualified_name(entry.name, entry.brand) for entry in self._entries
        }
        self._by_name: dict[str, list[CatalogEntry]] = {}
        for entry in self._entries:
            self._by_name.setdefault(normalize_text(entry.name), []).append(entry)

    @classmethod
    def from_db(cls, db: Session, policy: Optional[MatchPolicy] = None) -> "ProductMatcher":
        """Snapshot every non-rejected catalog product."""
        rows = (
            db.query(CatalogProduct.id, CatalogProduct.name, CatalogProduct.brand)
            .filter(CatalogProduct.status != CatalogProductStatus.REJECTED.value)
            .all()
        )
        logger.info(f"📚 Loaded catalog snapshot of {len(rows)} products for matching")
        return cls((CatalogEntry(id=r.id, name=r.name, brand=r.brand) for r in rows), policy)

    def __len__(self) -> int:
        return len(self._entries)

    def name_of(self, product_id: str) -> Optional[str]:
        return self._names.get(product_id)

    def match(self, name: str, brand: Optional[str] = None) -> MatchDecision:
        """
        Decide MATCH, AMBIGUOUS or NEW for one product name.

        Args:
            name: Seller-supplied product name
            brand: Optional seller-supplied brand

        Returns:
            MatchDecision; EXACT/FUZZY carry product_id, AMBIGUOUS carries
            the clustered candidate ids
        """
        normalized = normalize_text(name)
        if not normalized:
            return MatchDecision(kind=MatchKind.NEW)

        normalized_brand = normalize_text(brand)
        exact = [
            entry
            for entry in self._by_name.get(normalized, [])
            if not (normalized_brand and entry.brand)
            or normalize_text(entry.brand) == normalized_brand
        ]
        if len(exact) == 1:
            return MatchDecision(
                kind=MatchKind.EXACT,
                product_id=exact[0].id,
                confidence=1.0,
                candidate_ids=(exact[0].id,),
            )
        if len(exact) > 1:
            return MatchDecision(
                kind=MatchKind.AMBIGUOUS,
                confidence=1.0,
                candidate_ids=tuple(entry.id for entry in exact),
            )

        query = qualified_name(name, brand)
        scored = sorted(
            (
                (similarity(query, self._qualified[entry.id]), entry.id)
                for entry in self._entries
            ),
            key=lambda item: (-item[0], item[1]),
        )
        if not scored or scored[0][0] < self.policy.min_similarity:
            return MatchDecision(
                kind=MatchKind.NEW, confidence=scored[0][0] if scored else 0.0
            )

        top_score, top_id = scored[0]
        cluster = [
            product_id
            for score, product_id in scored
            if score >= self.policy.min_similarity
            and top_score - score <= self.policy.ambiguity_margin
        ]

        if len(cluster) == 1 and top_score >= self.policy.high_confidence:
            return MatchDecision(
                kind=MatchKind.FUZZY,
                product_id=top_id,
                confidence=top_score,
                candidate_ids=(top_id,),
            )

        # Close runner-ups, or a lone candidate below high confidence
        return MatchDecision(
            kind=MatchKind.AMBIGUOUS,
            confidence=top_score,
            candidate_ids=tuple(cluster),
        )
