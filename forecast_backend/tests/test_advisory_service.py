from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

import json
from types import SimpleNamespace

import pytest

from forecast_backend.app.core.errors import AdvisoryUnavailableError, RateLimitError
from forecast_backend.app.models.schemas import AdvisoryRequest
from forecast_backend.app.services.advisory_service import AdvisoryOptimizer, is_valid_api_key

API_KEY = "AIzaSyD4k3yF0rUn1tTest1ngPurp0s3s0nly9"


class StubClient:
    def __init__(self, text: str | None = None, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    def generate_content(self, prompt: str) -> SimpleNamespace:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.text)


def _request(model_id: str = "simple-exponential-smoothing") -> AdvisoryRequest:
    return AdvisoryRequest(
        model_id=model_id,
        historical_values=[float(10 + i % 5) for i in range(30)],
        current_parameters={"alpha": 0.3},
    )


def _optimizer(client: StubClient, enabled: bool = True) -> AdvisoryOptimizer:
    return AdvisoryOptimizer(api_key=API_KEY, model_name="gemini-test", enabled=enabled, client=client)


def test_api_key_validation() -> None:
    assert is_valid_api_key(API_KEY)
    assert not is_valid_api_key(None)
    assert not is_valid_api_key("short-key")
    assert not is_valid_api_key("your-gemini-api-key-goes-here")
    assert not is_valid_api_key("AIzaSyD4k3yF0rUn1t Test1ngPurp0s3s")


def test_recommendation_is_parsed_and_clamped() -> None:
    payload = {
        "optimizedParameters": {"alpha": 1.7, "beta": 0.2},
        "expectedAccuracy": 120,
        "confidence": 82,
        "reasoning": "Series is noisy; react quickly.",
        "factors": {"stability": 70, "interpretability": 90, "complexity": 20, "businessImpact": 75},
    }
    client = StubClient(text="Here you go:\n```json\n" + json.dumps(payload) + "\n```")

    recommendation = _optimizer(client).recommend(_request())

    assert recommendation.optimized_parameters == {"alpha": 0.99}
    assert recommendation.expected_accuracy == 100.0
    assert recommendation.confidence == 82.0
    assert recommendation.factors["businessImpact"] == 75.0
    assert "Simple Exponential Smoothing" in client.prompts[0]
    assert "Most recent 20 values" in client.prompts[0]


def test_rate_limit_is_reported_separately() -> None:
    client = StubClient(error=RuntimeError("429 Resource has been exhausted (e.g. check quota)."))

    with pytest.raises(RateLimitError):
        _optimizer(client).recommend(_request())


def test_transport_errors_become_unavailable() -> None:
    client = StubClient(error=ConnectionError("connection reset by peer"))

    with pytest.raises(AdvisoryUnavailableError) as excinfo:
        _optimizer(client).recommend(_request())

    assert not isinstance(excinfo.value, RateLimitError)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "I cannot help with that.",
        "{not json}",
        '{"optimizedParameters": {"gamma": 0.5}}',
    ],
)
def test_unusable_answers_are_rejected(text: str) -> None:
    with pytest.raises(AdvisoryUnavailableError):
        _optimizer(StubClient(text=text)).recommend(_request())


def test_disabled_optimizer_never_calls_provider() -> None:
    client = StubClient(text="{}")
    optimizer = _optimizer(client, enabled=False)

    assert not optimizer.is_available()
    with pytest.raises(AdvisoryUnavailableError):
        optimizer.recommend(_request())
    assert client.prompts == []


def test_missing_key_is_unavailable() -> None:
    optimizer = AdvisoryOptimizer(api_key="", enabled=True, client=StubClient(text="{}"))

    assert not optimizer.is_available()
