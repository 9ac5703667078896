"""Unit tests for the category confirmation and publication gate decisions."""
import pytest

from utils.classification_policy import compute_is_public, needs_confirmation, types_match
from utils.text_classifier import ClassificationResult


def _result(has_pii: bool, matches: bool = True, confidence: str = "high") -> ClassificationResult:
    return ClassificationResult(
        original_type="Reclamação",
        suggested_type="Reclamação" if matches else "Denúncia",
        matches=matches,
        reasoning="",
        has_pii=has_pii,
        pii_confidence=confidence,
    )


@pytest.mark.unit
class TestPublicationGate:
    @pytest.mark.parametrize(
        "is_anonymous, has_pii, expected",
        [
            (True, False, True),
            (False, False, False),
            (True, True, False),
            (False, True, False),
        ],
    )
    def test_only_anonymous_without_pii_is_public(self, is_anonymous, has_pii, expected):
        assert compute_is_public(is_anonymous, _result(has_pii)) is expected

    def test_failed_classification_stays_private(self):
        assert compute_is_public(True, _result(True, confidence="failed")) is False

    def test_missing_result_stays_private(self):
        assert compute_is_public(True, None) is False


@pytest.mark.unit
class TestTypeMatching:
    def test_case_insensitive(self):
        assert types_match("denúncia", "Denúncia") is True

    def test_different_categories(self):
        assert types_match("Elogio", "Sugestão") is False

    def test_missing_value(self):
        assert types_match(None, "Elogio") is False

    def test_confirmation_only_on_mismatch(self):
        assert needs_confirmation(_result(False, matches=False)) is True
        assert needs_confirmation(_result(False, matches=True)) is False
        assert needs_confirmation(None) is False
