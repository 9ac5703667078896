"""Unit tests for the Gemini-backed manifestation classifier

The remote model is replaced by a scripted callable and sleeps are recorded
instead of performed.
"""
import pytest

from utils.text_classifier import (
    PII_CONFIDENCE_FAILED,
    PII_CONFIDENCE_HIGH,
    PII_CONFIDENCE_LOW,
    ClassifierResponseError,
    TextClassifier,
    build_classification_prompt,
    parse_classification_payload,
    retry_after_hint,
)

LONG_TEXT = "O posto de saúde da quadra 302 está sem médicos há duas semanas."


@pytest.mark.unit
class TestShortCircuit:
    """Inputs too short to classify never reach the model"""

    @pytest.mark.parametrize("text", ["", "oi", "abcd", "   ab   "])
    def test_short_text_skips_remote_call(self, classifier, model, text):
        result = classifier.analyze(text, "Elogio")

        assert model.prompts == []
        assert result.matches is True
        assert result.has_pii is False
        assert result.pii_confidence == PII_CONFIDENCE_LOW
        assert result.suggested_type == "Elogio"
        assert result.original_type == "Elogio"


@pytest.mark.unit
class TestSuccessfulClassification:
    def test_mismatch_is_reported_with_reasoning(self, classifier, model, make_reply):
        model.replies = [make_reply(suggested="Denúncia", reasoning="Relata irregularidade.")]

        result = classifier.analyze(LONG_TEXT, "Reclamação")

        assert result.suggested_type == "Denúncia"
        assert result.original_type == "Reclamação"
        assert result.matches is False
        assert result.reasoning == "Relata irregularidade."
        assert result.has_pii is False
        assert result.pii_confidence == PII_CONFIDENCE_HIGH
        assert len(model.prompts) == 1

    def test_match_ignores_case(self, classifier, model, make_reply):
        model.replies = [make_reply(suggested="denúncia")]

        result = classifier.analyze(LONG_TEXT, "Denúncia")

        assert result.matches is True
        assert result.suggested_type == "Denúncia"

    def test_pii_flag_is_carried_through(self, classifier, model, make_reply):
        model.replies = [make_reply(has_pii=True, pii_analysis="Nome completo do autor")]

        result = classifier.analyze("Eu sou João da Silva e quero reclamar do ônibus.", "Reclamação")

        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_HIGH
        assert result.pii_analysis == "Nome completo do autor"

    def test_code_fences_are_stripped(self, classifier, model, make_reply):
        model.replies = ["```json\n" + make_reply(suggested="Sugestão") + "\n```"]

        result = classifier.analyze(LONG_TEXT, "Sugestão")

        assert result.suggested_type == "Sugestão"
        assert result.pii_confidence == PII_CONFIDENCE_HIGH

    def test_prompt_contains_text_and_categories(self, classifier, model):
        classifier.analyze(LONG_TEXT, "Reclamação")

        prompt = model.prompts[0]
        assert LONG_TEXT in prompt
        for category in ("Denúncia", "Reclamação", "Sugestão", "Elogio", "Informação"):
            assert category in prompt

    def test_payload_uses_camel_case(self, classifier):
        payload = classifier.analyze(LONG_TEXT, "Reclamação").to_payload()

        assert set(payload) == {
            "originalType",
            "suggestedType",
            "matches",
            "reasoning",
            "hasPii",
            "piiConfidence",
            "piiAnalysis",
        }


@pytest.mark.unit
class TestRateLimitRetries:
    def test_persistent_rate_limit_fails_closed(self, classifier, model, sleeps, rate_limited):
        model.replies = [rate_limited()]

        result = classifier.analyze(LONG_TEXT, "Elogio")

        assert len(model.prompts) == 5
        assert sleeps == [10, 10, 10, 10]
        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_FAILED
        assert result.suggested_type == "Elogio"
        assert result.matches is True

    def test_recovers_after_rate_limit(self, classifier, model, sleeps, rate_limited, make_reply):
        model.replies = [rate_limited(), make_reply(suggested="Elogio")]

        result = classifier.analyze(LONG_TEXT, "Elogio")

        assert len(model.prompts) == 2
        assert sleeps == [10]
        assert result.pii_confidence == PII_CONFIDENCE_HIGH

    def test_server_retry_delay_is_preferred(self, classifier, model, sleeps, rate_limited, make_reply):
        details = {
            "error": {
                "code": 429,
                "status": "RESOURCE_EXHAUSTED",
                "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "37s"}],
            }
        }
        model.replies = [rate_limited(details=details), make_reply()]

        classifier.analyze(LONG_TEXT, "Reclamação")

        assert sleeps == [38.0]

    def test_retry_hint_in_message(self, classifier, model, sleeps, make_reply):
        model.replies = [RuntimeError("429 Quota exceeded. Please retry in 2.5s."), make_reply()]

        classifier.analyze(LONG_TEXT, "Reclamação")

        assert sleeps == [3.5]

    def test_total_wait_is_bounded(self, model, sleeps, rate_limited):
        classifier = TextClassifier(
            generate=model,
            sleep=sleeps.append,
            max_attempts=5,
            default_retry_seconds=10,
            max_total_wait_seconds=15,
        )
        model.replies = [rate_limited()]

        result = classifier.analyze(LONG_TEXT, "Reclamação")

        assert sleeps == [10]
        assert len(model.prompts) == 2
        assert result.pii_confidence == PII_CONFIDENCE_FAILED

    def test_hint_beyond_budget_gives_up_without_sleeping(self, model, sleeps):
        classifier = TextClassifier(generate=model, sleep=sleeps.append, max_total_wait_seconds=15)
        model.replies = [RuntimeError("429 Quota exceeded. Please retry in 30s.")]

        result = classifier.analyze(LONG_TEXT, "Reclamação")

        assert sleeps == []
        assert len(model.prompts) == 1
        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_FAILED


@pytest.mark.unit
class TestNonRetryableFailures:
    def test_generic_error_is_not_retried(self, classifier, model, sleeps):
        model.replies = [ConnectionError("network unreachable")]

        result = classifier.analyze(LONG_TEXT, "Informação")

        assert len(model.prompts) == 1
        assert sleeps == []
        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_FAILED
        assert result.suggested_type == "Informação"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json at all",
            "[]",
            '{"reasoning": "sem tipo", "hasPii": false}',
            '{"suggestedType": "Solicitação", "reasoning": "x", "hasPii": false}',
            '{"suggestedType": "Elogio", "reasoning": "x"}',
            '{"suggestedType": "Elogio", "reasoning": "x", "hasPii": "talvez"}',
            '{"suggestedType": "Elogio", "reasoning": "x", "hasPii": "false"}',
            '{"suggestedType": "Elogio", "reasoning": "x", "hasPii": 0}',
            '{"suggestedType": "Elogio", "reasoning": "x", "hasPii": []}',
            '{"suggestedType": "Elogio", "reasoning": "x", "hasPii": {}}',
            "",
        ],
    )
    def test_invalid_reply_fails_closed_without_retry(self, classifier, model, sleeps, raw):
        model.replies = [raw]

        result = classifier.analyze(LONG_TEXT, "Elogio")

        assert len(model.prompts) == 1
        assert sleeps == []
        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_FAILED

    def test_missing_api_key_fails_closed(self):
        classifier = TextClassifier(api_key="", sleep=lambda _: None)

        result = classifier.analyze(LONG_TEXT, "Reclamação")

        assert result.has_pii is True
        assert result.pii_confidence == PII_CONFIDENCE_FAILED


@pytest.mark.unit
class TestParsingHelpers:
    def test_parse_normalizes_category(self):
        parsed = parse_classification_payload('{"suggestedType": "ELOGIO", "reasoning": "ok", "hasPii": false}')

        assert parsed["suggested_type"] == "Elogio"
        assert parsed["has_pii"] is False

    @pytest.mark.parametrize("flag", ['"false"', '"true"', "0", "null"])
    def test_parse_rejects_non_boolean_pii_flag(self, flag):
        with pytest.raises(ClassifierResponseError):
            parse_classification_payload('{"suggestedType": "Elogio", "reasoning": "ok", "hasPii": %s}' % flag)

    def test_parse_rejects_non_string_reasoning(self):
        with pytest.raises(ClassifierResponseError):
            parse_classification_payload('{"suggestedType": "Elogio", "reasoning": 3, "hasPii": false}')

    def test_retry_after_hint_absent(self):
        assert retry_after_hint(RuntimeError("429 Too Many Requests")) is None

    def test_prompt_mentions_self_identification_rule(self):
        assert "Autoidentificação" in build_classification_prompt("texto")
