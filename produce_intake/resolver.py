"""Ambiguity Resolver: turns parsed order lines into a reviewable list.

Every line ends up either resolved (exactly one catalog product) or pending
(the buyer has to pick from candidates). The AI model's hints are used when
they point at real catalog ids; the deterministic matcher in CatalogIndex
decides auto-resolution so correctness never depends on the model.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .catalog import CatalogIndex
from .domain import CartLine, ParsedLine
from .errors import AmbiguityUnresolvedError, NotFoundError, ValidationError

logger = logging.getLogger("pz.resolver")

ISSUE_MISSING_SUGGESTIONS = "missing_suggestions"
ISSUE_UNMATCHED = "unmatched"


class LineState(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"


@dataclass
class ReviewLine:
    """A parsed line plus what the resolver knows about it."""
    parsed: ParsedLine
    candidates: List[str] = field(default_factory=list)
    auto_product_id: Optional[str] = None
    issue: Optional[str] = None

    @property
    def product_id(self) -> Optional[str]:
        return self.parsed.selected_product_id or self.auto_product_id

    @property
    def state(self) -> LineState:
        return LineState.RESOLVED if self.product_id else LineState.PENDING


@dataclass
class ReviewList:
    lines: List[ReviewLine] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.lines)

    def pending_indexes(self) -> List[int]:
        return [idx for idx, line in enumerate(self.lines) if line.state is LineState.PENDING]

    def issues(self) -> List[dict]:
        return [
            {"index": idx, "product_name": line.parsed.product_name, "issue": line.issue}
            for idx, line in enumerate(self.lines)
            if line.issue
        ]


class AmbiguityResolver:
    def build_review(self, parsed_lines: Sequence[ParsedLine], catalog: CatalogIndex) -> ReviewList:
        """Purpose: Classify each parsed line as resolved or pending against the catalog.
        Inputs/Outputs: Inputs are parsed lines and a catalog snapshot; output is a ReviewList.
        Side Effects / State: Drops selected ids that are not in the catalog; logs
            data-quality issues and matcher/model divergence.
        Dependencies: CatalogIndex.match_name for the deterministic fallback.
        Failure Modes: ValidationError when any quantity is not positive (nothing is built).
        If Removed: AI quick orders cannot be reviewed or confirmed.
        Testing Notes: Ambiguous banana line with two suggestions stays pending; unique
            tomato line auto-resolves; ambiguous line with no suggestions is flagged.
        """
        # Validate everything first so a bad line never yields a half-built list.
        for idx, parsed in enumerate(parsed_lines):
            quantity = parsed.quantity
            if not isinstance(quantity, (int, float)) or not math.isfinite(quantity) or quantity <= 0:
                raise ValidationError(
                    "Parsed quantity must be a positive number",
                    {"index": idx, "product_name": parsed.product_name, "quantity": parsed.quantity},
                )

        review = ReviewList()
        for parsed in parsed_lines:
            review.lines.append(self._review_line(parsed, catalog))
        logger.info(
            "review_built lines=%d pending=%d issues=%d",
            len(review),
            len(review.pending_indexes()),
            len(review.issues()),
        )
        return review

    def _review_line(self, parsed: ParsedLine, catalog: CatalogIndex) -> ReviewLine:
        parsed = ParsedLine(
            product_name=parsed.product_name,
            quantity=parsed.quantity,
            unit=parsed.unit,
            is_ambiguous=parsed.is_ambiguous,
            suggested_product_ids=list(parsed.suggested_product_ids),
            selected_product_id=parsed.selected_product_id,
        )
        matches = catalog.match_name(parsed.product_name)
        suggestions = [pid for pid in parsed.suggested_product_ids if pid in catalog]
        dropped = [pid for pid in parsed.suggested_product_ids if pid not in catalog]
        if dropped:
            logger.warning("suggestions_not_in_catalog product=%s ids=%s", parsed.product_name, dropped)
        self._log_divergence(parsed, matches, suggestions)

        if parsed.selected_product_id and parsed.selected_product_id not in catalog:
            logger.warning(
                "selected_id_not_in_catalog product=%s id=%s", parsed.product_name, parsed.selected_product_id
            )
            parsed.selected_product_id = None

        if parsed.selected_product_id:
            return ReviewLine(parsed=parsed, candidates=suggestions or [parsed.selected_product_id])

        if not parsed.is_ambiguous and len(matches) == 1:
            return ReviewLine(parsed=parsed, candidates=matches, auto_product_id=matches[0])

        if parsed.is_ambiguous:
            if not suggestions:
                logger.warning("ambiguous_without_suggestions product=%s", parsed.product_name)
                return ReviewLine(parsed=parsed, candidates=[], issue=ISSUE_MISSING_SUGGESTIONS)
            return ReviewLine(parsed=parsed, candidates=suggestions)

        candidates = suggestions or matches
        if not candidates:
            logger.warning("unmatched_line product=%s", parsed.product_name)
            return ReviewLine(parsed=parsed, candidates=[], issue=ISSUE_UNMATCHED)
        return ReviewLine(parsed=parsed, candidates=candidates)

    def _log_divergence(self, parsed: ParsedLine, matches: List[str], suggestions: List[str]) -> None:
        model_ids = set(suggestions)
        if parsed.selected_product_id:
            model_ids.add(parsed.selected_product_id)
        if model_ids and not model_ids.issubset(matches):
            logger.info(
                "matcher_divergence product=%s model=%s matcher=%s",
                parsed.product_name,
                sorted(model_ids),
                matches,
            )

    def select(self, review: ReviewList, index: int, product_id: str, catalog: CatalogIndex) -> ReviewLine:
        """Set the buyer's explicit choice for one line; the id must exist in the catalog."""
        line = _line_at(review, index)
        if product_id not in catalog:
            raise ValidationError("Unknown product id", {"index": index, "product_id": product_id})
        line.parsed.selected_product_id = product_id
        if product_id not in line.candidates:
            line.candidates.append(product_id)
        logger.info("line_selected index=%d product_id=%s", index, product_id)
        return line

    def clear(self, review: ReviewList, index: int) -> ReviewLine:
        # Clearing also forgets an auto-resolution: the line is pending again.
        line = _line_at(review, index)
        line.parsed.selected_product_id = None
        line.auto_product_id = None
        logger.info("line_cleared index=%d", index)
        return line

    def confirm(self, review: ReviewList, catalog: CatalogIndex) -> List[CartLine]:
        """Purpose: Convert a fully resolved review list into priced cart lines.
        Inputs/Outputs: Inputs are the ReviewList and catalog; output is one CartLine per line.
        Side Effects / State: None; the review list is left untouched either way.
        Dependencies: CatalogIndex.get for default prices.
        Failure Modes: AmbiguityUnresolvedError listing pending indexes; ValidationError
            if a resolved product vanished from the catalog snapshot.
        If Removed: Reviewed AI orders can never reach the cart.
        Testing Notes: Unit price always equals the catalog default price.
        """
        # Refuse while anything is pending, then price strictly from the catalog.
        pending = review.pending_indexes()
        if pending:
            raise AmbiguityUnresolvedError(
                "Select a specific product for every highlighted line before adding to cart",
                {
                    "pending": pending,
                    "products": [review.lines[idx].parsed.product_name for idx in pending],
                },
            )
        cart_lines: List[CartLine] = []
        for idx, line in enumerate(review.lines):
            product = catalog.get(line.product_id)
            if product is None:
                raise ValidationError(
                    "Resolved product is no longer in the catalog", {"index": idx, "product_id": line.product_id}
                )
            cart_lines.append(
                CartLine(
                    product_id=product.id,
                    quantity=line.parsed.quantity,
                    unit_price=product.default_price,
                    unit=line.parsed.unit,
                )
            )
        return cart_lines


def _line_at(review: ReviewList, index: int) -> ReviewLine:
    if index < 0 or index >= len(review.lines):
        raise NotFoundError("Review line does not exist", {"index": index})
    return review.lines[index]
