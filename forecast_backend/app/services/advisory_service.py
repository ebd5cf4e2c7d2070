r"""forecast_backend/app/services/advisory_service.py

Parameter recommendations from Google's Gemini (genai) API.

The advisory optimizer is best effort.  Every failure (missing or
placeholder credential, quota errors, transport errors, unparseable answers)
surfaces as :class:`AdvisoryUnavailableError` or :class:`RateLimitError` so
the orchestrator can fall back to grid results alone.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import google.generativeai as genai
from pydantic import ValidationError

from ..core.config import get_settings
from ..core.errors import AdvisoryUnavailableError, RateLimitError
from ..models.schemas import AdvisoryRecommendation, AdvisoryRequest
from .model_registry import ModelRegistry, get_registry

LOGGER = logging.getLogger(__name__)

_PLACEHOLDER_MARKERS = ("placeholder", "xxxxxxxx", "changeme", "your-", "your_")
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")
_RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "resourceexhausted", "resource_exhausted")


def is_valid_api_key(api_key: Optional[str]) -> bool:
    """Static sanity check of a credential; never contacts the provider."""

    if not api_key:
        return False
    key = api_key.strip()
    if len(key) <= 20 or any(ch.isspace() for ch in key):
        return False
    lowered = key.lower()
    return not any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


class AdvisoryOptimizer:
    """Ask Gemini for better parameters of one model on one series."""

    RECENT_VALUES: int = 20

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        registry: ModelRegistry | None = None,
        client: Optional[Any] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self.enabled = settings.advisory_enabled if enabled is None else bool(enabled)
        self.registry = registry or get_registry()
        self._client = client

    # ------------------------------------------------------------------
    def is_available(self) -> bool:
        return self.enabled and is_valid_api_key(self.api_key)

    def _get_client(self) -> Any:
        if not self.is_available():
            raise AdvisoryUnavailableError("Advisory optimizer is disabled or has no valid credential")
        if self._client is None:
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(self.model_name)
        return self._client

    # ------------------------------------------------------------------
    def build_prompt(self, request: AdvisoryRequest) -> str:
        descriptor = self.registry.describe(request.model_id)
        recent = request.historical_values[-self.RECENT_VALUES :]
        schema = [definition.as_dict() for definition in descriptor.parameter_defs]
        context = request.business_context
        return (
            "You tune statistical demand forecasting models. "
            f"Recommend parameters for the {descriptor.display_name} model ({request.model_id}) "
            f"that minimise {request.target_metric.upper()} on the series below.\n\n"
            f"Total observations: {len(request.historical_values)}\n"
            f"Most recent {len(recent)} values: {[round(v, 4) for v in recent]}\n"
            f"Seasonal period: {request.seasonal_period or 'none'}\n"
            f"Current parameters: {json.dumps(request.current_parameters, sort_keys=True)}\n"
            f"Parameter schema: {json.dumps(schema)}\n"
            "Business context: "
            f"cost of error {context.cost_of_error}, planning purpose {context.planning_purpose}, "
            f"update frequency {context.update_frequency}, "
            f"interpretability needs {context.interpretability_needs}.\n\n"
            "Answer with a single JSON object and nothing else, shaped as "
            '{"optimizedParameters": {...}, "expectedAccuracy": <0-100>, '
            '"confidence": <0-100>, "reasoning": "<short text>", '
            '"factors": {"stability": <0-100>, "interpretability": <0-100>, '
            '"complexity": <0-100>, "businessImpact": <0-100>}}'
        )

    # ------------------------------------------------------------------
    def _complete(self, prompt: str) -> str:
        client = self._get_client()
        try:
            response = client.generate_content(prompt)
        except Exception as exc:
            text = f"{type(exc).__name__} {exc}".lower()
            if any(marker in text for marker in _RATE_LIMIT_MARKERS):
                raise RateLimitError(f"Advisory provider rate limited the request: {exc}") from exc
            raise AdvisoryUnavailableError(f"Advisory request failed: {exc}") from exc

        text = getattr(response, "text", None)
        if not isinstance(text, str) or not text.strip():
            raise AdvisoryUnavailableError("Advisory provider returned an empty response")
        return text

    # ------------------------------------------------------------------
    def parse_response(self, text: str, request: AdvisoryRequest) -> AdvisoryRecommendation:
        """Extract and sanitise the JSON recommendation embedded in ``text``."""

        match = _JSON_BLOCK.search(text)
        if match is None:
            raise AdvisoryUnavailableError("Advisory response did not contain a JSON object")
        try:
            payload = json.loads(match.group(0))
            recommendation = AdvisoryRecommendation.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise AdvisoryUnavailableError(f"Advisory response could not be parsed: {exc}") from exc

        descriptor = self.registry.describe(request.model_id)
        known = {definition.name for definition in descriptor.parameter_defs}
        if not known.intersection(recommendation.optimized_parameters):
            raise AdvisoryUnavailableError("Advisory response proposed no usable parameters")

        parameters = self.registry.sanitize_parameters(
            request.model_id,
            recommendation.optimized_parameters,
            base=request.current_parameters,
        )
        expected = recommendation.expected_accuracy
        return recommendation.model_copy(
            update={
                "optimized_parameters": parameters,
                "confidence": min(100.0, max(0.0, recommendation.confidence)),
                "expected_accuracy": None if expected is None else min(100.0, max(0.0, expected)),
            }
        )

    # ------------------------------------------------------------------
    def recommend(self, request: AdvisoryRequest) -> AdvisoryRecommendation:
        LOGGER.info("Requesting advisory parameters for model=%s", request.model_id)
        text = self._complete(self.build_prompt(request))
        return self.parse_response(text, request)
