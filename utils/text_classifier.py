"""Gemini integration that classifies manifestation text and screens it for personal data."""
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from google import genai
from google.genai import types
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
)

from models import MANIFESTATION_TYPES, canonical_type
from utils.classification_policy import types_match

logger = logging.getLogger(__name__)

PII_CONFIDENCE_LOW = "low"
PII_CONFIDENCE_HIGH = "high"
PII_CONFIDENCE_FAILED = "failed"

_RATE_LIMIT_MARKERS = ("429", "RESOURCE_EXHAUSTED", "quota", "rate limit")
_RETRY_IN_PATTERN = re.compile(r"retry in\s+([0-9]+(?:\.[0-9]+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_PATTERN = re.compile(r"retryDelay['\"]?\s*[:=]\s*['\"]?([0-9]+(?:\.[0-9]+)?)s", re.IGNORECASE)


class ClassifierError(Exception):
    """Raised when the remote model cannot return a usable classification."""


class ClassifierRateLimitError(ClassifierError):
    """Raised when the remote model throttles the request (HTTP 429 / quota exceeded)."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ClassifierResponseError(ClassifierError):
    """Raised when the model replied but the reply is not the expected JSON object."""


@dataclass
class ClassificationResult:
    original_type: str
    suggested_type: str
    matches: bool
    reasoning: str
    has_pii: bool
    pii_confidence: str
    pii_analysis: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "originalType": self.original_type,
            "suggestedType": self.suggested_type,
            "matches": self.matches,
            "reasoning": self.reasoning,
            "hasPii": self.has_pii,
            "piiConfidence": self.pii_confidence,
            "piiAnalysis": self.pii_analysis,
        }


def build_classification_prompt(text: str, valid_types: Iterable[str] = MANIFESTATION_TYPES) -> str:
    return (
        "Você é a IZA, a inteligência artificial da Ouvidoria do DF. "
        "Sua missão é classificar as manifestações e proteger a privacidade dos cidadãos.\n\n"
        "Analise o seguinte relato:\n"
        f"\"{text}\"\n\n"
        "Tarefas:\n"
        f"1. Classifique em exatamente uma destas categorias: {', '.join(valid_types)}.\n"
        "2. Verifique se há DADOS PESSOAIS identificáveis no texto (ex: nome completo, CPF, telefone, "
        "email, endereço residencial preciso, placa de carro vinculada a uma pessoa).\n"
        "   - Menções a agentes públicos, órgãos do governo ou lugares genéricos NÃO contam como dado pessoal.\n"
        "   - Autoidentificação (\"Eu sou João\") CONTA como dado pessoal.\n\n"
        "Responda APENAS com um JSON, sem markdown e sem texto adicional:\n"
        "{"
        "\"suggestedType\": \"Tipo\", "
        "\"reasoning\": \"Explicação breve.\", "
        "\"hasPii\": true/false, "
        "\"piiAnalysis\": \"O que foi encontrado (sem repetir o dado) ou 'Nenhum dado pessoal encontrado'.\""
        "}"
    )


def strip_code_fences(raw_text: str) -> str:
    cleaned = (raw_text or "").strip()
    cleaned = re.sub(r"^```[a-zA-Z0-9_-]*", "", cleaned).strip()
    cleaned = re.sub(r"```$", "", cleaned).strip()
    return cleaned


def parse_classification_payload(raw_text: str) -> Dict[str, Any]:
    """Validate the model reply and return normalized fields.

    Raises ClassifierResponseError for anything that is not a JSON object with
    a known category, a reasoning string and a boolean PII flag.
    """
    cleaned = strip_code_fences(raw_text)
    if not cleaned:
        raise ClassifierResponseError("Model returned an empty response")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ClassifierResponseError("Model returned non-JSON output") from exc
    if not isinstance(data, dict):
        raise ClassifierResponseError("Model returned JSON that is not an object")

    suggested = data.get("suggestedType")
    if not isinstance(suggested, str) or not suggested.strip():
        raise ClassifierResponseError("Missing required field: suggestedType")
    suggested_type = canonical_type(suggested)
    if not suggested_type:
        raise ClassifierResponseError(f"Unknown category suggested: {suggested!r}")

    reasoning = data.get("reasoning", "")
    if not isinstance(reasoning, str):
        raise ClassifierResponseError("Field reasoning must be a string")

    # Only a JSON boolean can clear the publication gate.
    has_pii = data.get("hasPii")
    if not isinstance(has_pii, bool):
        raise ClassifierResponseError("Field hasPii must be a boolean")

    pii_analysis = data.get("piiAnalysis")
    if pii_analysis is not None and not isinstance(pii_analysis, str):
        pii_analysis = None

    return {
        "suggested_type": suggested_type,
        "reasoning": reasoning.strip(),
        "has_pii": has_pii,
        "pii_analysis": pii_analysis,
    }


def is_rate_limit_error(exc: BaseException) -> bool:
    if getattr(exc, "code", None) == 429 or getattr(exc, "status_code", None) == 429:
        return True
    status = getattr(exc, "status", None)
    if status == 429 or status == "RESOURCE_EXHAUSTED":
        return True
    message = str(exc)
    return any(marker.lower() in message.lower() for marker in _RATE_LIMIT_MARKERS)


def _retry_delay_from_details(details: Any) -> Optional[float]:
    if isinstance(details, dict):
        delay = details.get("retryDelay")
        if isinstance(delay, str) and delay.endswith("s"):
            try:
                return float(delay[:-1])
            except ValueError:
                return None
        for value in details.values():
            found = _retry_delay_from_details(value)
            if found is not None:
                return found
    elif isinstance(details, list):
        for item in details:
            found = _retry_delay_from_details(item)
            if found is not None:
                return found
    return None


def retry_after_hint(exc: BaseException) -> Optional[float]:
    """Seconds the server asked us to wait, from the error details or message."""
    hint = _retry_delay_from_details(getattr(exc, "details", None))
    if hint is not None:
        return hint
    message = str(exc)
    for pattern in (_RETRY_DELAY_PATTERN, _RETRY_IN_PATTERN):
        match = pattern.search(message)
        if match:
            return float(match.group(1))
    return None


class TextClassifier:
    """Classifies citizen text and flags personal data, absorbing every remote failure.

    ``analyze`` never raises. Rate-limited calls are retried with the server's
    retry hint (plus a buffer) or a default delay; anything else, including an
    unparseable reply, ends in a fail-closed result that assumes PII is present.
    """

    def __init__(
        self,
        api_key: str = "",
        model_name: str = "gemini-2.5-flash",
        *,
        generate: Optional[Callable[[str], str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        min_text_length: int = 5,
        max_attempts: int = 5,
        default_retry_seconds: float = 10.0,
        retry_buffer_seconds: float = 1.0,
        max_total_wait_seconds: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self.min_text_length = min_text_length
        self.max_attempts = max_attempts
        self.default_retry_seconds = default_retry_seconds
        self.retry_buffer_seconds = retry_buffer_seconds
        self.max_total_wait_seconds = max_total_wait_seconds
        self._generate_fn = generate
        self._sleep = sleep
        self._client: Optional[genai.Client] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any], **overrides: Any) -> "TextClassifier":
        options = {
            "api_key": config.get("GEMINI_API_KEY", ""),
            "model_name": config.get("GEMINI_MODEL", "gemini-2.5-flash"),
            "min_text_length": int(config.get("CLASSIFIER_MIN_TEXT_LENGTH", 5)),
            "max_attempts": int(config.get("CLASSIFIER_MAX_ATTEMPTS", 5)),
            "default_retry_seconds": float(config.get("CLASSIFIER_DEFAULT_RETRY_SECONDS", 10)),
            "retry_buffer_seconds": float(config.get("CLASSIFIER_RETRY_BUFFER_SECONDS", 1)),
            "max_total_wait_seconds": float(config.get("CLASSIFIER_MAX_TOTAL_WAIT_SECONDS", 60)),
        }
        options.update(overrides)
        return cls(**options)

    def close(self) -> None:
        client, self._client = self._client, None
        close = getattr(client, "close", None)
        if callable(close):
            close()

    def _gemini_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise ClassifierError("GEMINI_API_KEY is not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _generate_with_gemini(self, prompt: str) -> str:
        response = self._gemini_client().models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=types.GenerateContentConfig(response_mime_type="application/json"),
        )
        raw_text = (response.text or "").strip()
        if not raw_text and getattr(response, "candidates", None):
            parts = response.candidates[0].content.parts or []
            raw_text = "".join(getattr(p, "text", "") or "" for p in parts).strip()
        return raw_text

    def _request(self, prompt: str) -> str:
        """Run one remote call, translating failures into the classifier error types."""
        generate = self._generate_fn or self._generate_with_gemini
        try:
            return generate(prompt)
        except ClassifierError:
            raise
        except Exception as exc:
            if is_rate_limit_error(exc):
                raise ClassifierRateLimitError(str(exc), retry_after=retry_after_hint(exc)) from exc
            raise ClassifierError(f"Remote classification failed: {exc}") from exc

    def _wait_seconds(self, retry_state: RetryCallState) -> float:
        """Server retry hint plus the buffer, or the default delay without a hint."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return retry_after + self.retry_buffer_seconds
        return self.default_retry_seconds

    def _wait_budget_exhausted(self, retry_state: RetryCallState) -> bool:
        return retry_state.idle_for + self._wait_seconds(retry_state) > self.max_total_wait_seconds

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.info(
            "Classifier rate limited; retrying",
            extra={"attempt": retry_state.attempt_number, "wait_seconds": retry_state.next_action.sleep},
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_any(stop_after_attempt(self.max_attempts), self._wait_budget_exhausted),
            wait=self._wait_seconds,
            retry=retry_if_exception_type(ClassifierRateLimitError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

    @staticmethod
    def _fallback(user_type: str, reasoning: str) -> ClassificationResult:
        return ClassificationResult(
            original_type=user_type,
            suggested_type=user_type,
            matches=True,
            reasoning=reasoning,
            has_pii=True,
            pii_confidence=PII_CONFIDENCE_FAILED,
        )

    def analyze(self, text: str, user_type: str) -> ClassificationResult:
        text = text or ""
        if len(text.strip()) < self.min_text_length:
            return ClassificationResult(
                original_type=user_type,
                suggested_type=user_type,
                matches=True,
                reasoning="text too short",
                has_pii=False,
                pii_confidence=PII_CONFIDENCE_LOW,
            )

        prompt = build_classification_prompt(text)
        logger.info(
            "Dispatching manifestation classification",
            extra={"max_attempts": self.max_attempts, "model": self.model_name},
        )
        try:
            parsed = parse_classification_payload(self._retrying()(self._request, prompt))
        except RetryError as exc:
            logger.warning(
                "Classifier rate limit persisted",
                extra={"attempts": exc.last_attempt.attempt_number, "budget": self.max_total_wait_seconds},
            )
            return self._fallback(user_type, "AI analysis unavailable (rate limit).")
        except ClassifierResponseError as exc:
            logger.warning("Classifier reply rejected", extra={"error": str(exc)})
            return self._fallback(user_type, "AI analysis returned an invalid reply.")
        except ClassifierError as exc:
            logger.warning("Classifier request failed", extra={"error": str(exc)})
            return self._fallback(user_type, "AI analysis failed.")
        except Exception:  # pragma: no cover - analyze must never raise
            logger.exception("Unexpected classifier failure")
            return self._fallback(user_type, "AI analysis failed.")

        suggested_type = parsed["suggested_type"]
        logger.info(
            "Manifestation classified",
            extra={"suggested_type": suggested_type, "has_pii": parsed["has_pii"]},
        )
        return ClassificationResult(
            original_type=user_type,
            suggested_type=suggested_type,
            matches=types_match(suggested_type, user_type),
            reasoning=parsed["reasoning"],
            has_pii=parsed["has_pii"],
            pii_confidence=PII_CONFIDENCE_HIGH,
            pii_analysis=parsed["pii_analysis"],
        )
