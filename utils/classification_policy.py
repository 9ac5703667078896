"""Decisions derived from a classification: category confirmation and public-feed eligibility."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from utils.text_classifier import ClassificationResult


def types_match(suggested_type: str | None, declared_type: str | None) -> bool:
    """Case-insensitive comparison of the suggested and the citizen-chosen category."""
    if suggested_type is None or declared_type is None:
        return False
    return suggested_type.lower() == declared_type.lower()


def needs_confirmation(result: ClassificationResult | None) -> bool:
    """True when the citizen should be asked to keep their category or take the suggestion."""
    if result is None:
        return False
    return not result.matches


def compute_is_public(is_anonymous: bool, result: ClassificationResult | None) -> bool:
    """Automatic publication gate.

    Only an anonymous manifestation whose text was judged free of PII is
    published. A missing result counts as PII present.
    """
    if result is None:
        return False
    return bool(is_anonymous) and result.has_pii is False
