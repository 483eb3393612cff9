import base64
import json
import threading

import pytest
import requests

from config_utils import ScreenConfig
from errors import LlmCallError
from screens.llm_client import (
    ANTHROPIC_API_URL,
    FALLBACK_PROMPT,
    LlmApiService,
    LlmResponse,
    build_prompts,
    calculate_cost,
    compose_prompt,
    extract_json_text,
    parse_llm_text,
    read_chart_image,
    temperature_for_call,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


def message(answer, input_tokens=1000, output_tokens=100):
    text = answer if isinstance(answer, str) else json.dumps(answer)
    return {
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


class FakeHttp:
    """Answers by request temperature so concurrent calls stay deterministic."""

    def __init__(self, answers_by_temperature):
        self.answers = answers_by_temperature
        self.calls = []
        self._lock = threading.Lock()

    def post(self, url, headers=None, json=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        answer = self.answers[json["temperature"]]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse(payload=message(answer))


@pytest.fixture
def screen_config():
    return ScreenConfig(enabled=True, num_calls=3, agreement_threshold=2, temperatures=[0.2, 0.5, 0.8])


ENV = {"ANTHROPIC_API_KEY": "test-key"}


def test_calculate_cost_uses_token_prices():
    assert calculate_cost({"input_tokens": 1000, "output_tokens": 100}) == pytest.approx(0.0045)
    assert calculate_cost(None) == 0.0


def test_extract_json_text_strips_fences():
    fenced = '```json\n{"action": "long"}\n```'
    assert extract_json_text(fenced) == '{"action": "long"}'
    assert extract_json_text('`{"action": "short"}`') == '{"action": "short"}'


def test_parse_llm_text_reads_fields():
    response = parse_llm_text(
        '{"action": "long", "rationalization": "Strong open", "proposedStopLoss": "99.5", '
        '"proposedProfitTarget": 103, "confidence": 4}',
        cost=0.01,
    )
    assert response.action == "long"
    assert response.rationalization == "Strong open"
    assert response.proposed_stop_loss == pytest.approx(99.5)
    assert response.proposed_profit_target == pytest.approx(103.0)
    assert response.confidence == 4
    assert response.cost == 0.01
    assert response.is_directional


def test_parse_llm_text_invalid_json_keeps_cost():
    response = parse_llm_text("I think you should buy", cost=0.02)
    assert response.action == "do_nothing"
    assert response.cost == 0.02
    assert response.error is None
    assert not response.is_directional


def test_parse_llm_text_unknown_action_is_do_nothing():
    assert parse_llm_text('{"action": "buy"}').action == "do_nothing"


def test_errored_response_is_not_directional():
    assert not LlmResponse(action="long", error="boom").is_directional


def test_build_prompts_single_string_is_reused():
    assert build_prompts("look", 3) == ["look", "look", "look"]


def test_build_prompts_list_must_match_num_calls():
    assert build_prompts(["a", "b"], 2) == ["a", "b"]
    assert build_prompts(["a", "b"], 3) == ["a", "a", "a"]
    assert build_prompts([], 2) == [FALLBACK_PROMPT, FALLBACK_PROMPT]


def test_temperature_for_call_falls_back_to_first():
    assert temperature_for_call([0.2, 0.5], 1) == 0.5
    assert temperature_for_call([0.2, 0.5], 2) == 0.2
    assert temperature_for_call([], 0) == 0.5


def test_read_chart_image(tmp_path):
    chart = tmp_path / "chart.png"
    chart.write_bytes(b"\x89PNG data")
    data, media = read_chart_image(str(chart))
    assert media == "image/png"
    assert base64.b64decode(data) == b"\x89PNG data"

    assert read_chart_image(str(tmp_path / "missing.png")) == (None, None)
    assert read_chart_image(str(tmp_path / "chart.svg")) == (None, None)
    assert read_chart_image(None) == (None, None)


def test_read_chart_image_unreadable_raises(tmp_path):
    # A directory with an image suffix cannot be opened as a file
    folder = tmp_path / "folder.png"
    folder.mkdir()
    with pytest.raises(LlmCallError):
        read_chart_image(str(folder))


def test_compose_prompt_appends_metrics_and_suffix():
    text = compose_prompt("Look.", "Prev Close: $1.00", " JSON please")
    assert text == "Look.\n\nMarket context at signal time:\nPrev Close: $1.00 JSON please"
    assert compose_prompt("Look.", None, None) == "Look."


def test_service_disabled_without_api_key(screen_config):
    http = FakeHttp({})
    service = LlmApiService(screen_config, http=http, environ={})
    assert not service.is_enabled()
    responses = service.get_trade_decisions("chart.png")
    assert len(responses) == 3
    assert all(r.error for r in responses)
    assert http.calls == []


def test_get_trade_decisions_returns_one_response_per_call(screen_config, tmp_path):
    chart = tmp_path / "chart.png"
    chart.write_bytes(b"png")
    http = FakeHttp(
        {
            0.2: {"action": "long", "proposedStopLoss": 99, "proposedProfitTarget": 104},
            0.5: {"action": "long", "proposedStopLoss": 98, "proposedProfitTarget": 105},
            0.8: {"action": "short"},
        }
    )
    service = LlmApiService(screen_config, http=http, environ=ENV)
    responses = service.get_trade_decisions(str(chart), "Prev Close: $100.00")

    assert [r.action for r in responses] == ["long", "long", "short"]
    assert all(r.cost == pytest.approx(0.0045) for r in responses)
    assert len(http.calls) == 3

    call = http.calls[0]
    assert call["url"] == ANTHROPIC_API_URL
    assert call["headers"]["x-api-key"] == "test-key"
    content = call["json"]["messages"][0]["content"]
    assert content[0]["type"] == "image"
    assert content[0]["source"]["media_type"] == "image/png"
    assert "Market context at signal time:\nPrev Close: $100.00" in content[1]["text"]
    assert call["json"]["max_tokens"] == 150


def test_get_trade_decisions_without_chart_sends_text_only(screen_config):
    http = FakeHttp({0.2: {"action": "long"}, 0.5: {"action": "long"}, 0.8: {"action": "long"}})
    service = LlmApiService(screen_config, http=http, environ=ENV)
    service.get_trade_decisions(None)
    content = http.calls[0]["json"]["messages"][0]["content"]
    assert [part["type"] for part in content] == ["text"]


def test_system_prompt_is_sent_when_configured(screen_config):
    screen_config.system_prompt = "You trade SPY."
    http = FakeHttp({0.2: {"action": "long"}, 0.5: {"action": "long"}, 0.8: {"action": "long"}})
    LlmApiService(screen_config, http=http, environ=ENV).get_trade_decisions(None)
    assert all(c["json"]["system"] == "You trade SPY." for c in http.calls)


def test_failed_calls_settle_as_errors(screen_config):
    http = FakeHttp(
        {
            0.2: {"action": "long"},
            0.5: FakeResponse(status_code=500, text="overloaded"),
            0.8: requests.ConnectionError("connection reset"),
        }
    )
    responses = LlmApiService(screen_config, http=http, environ=ENV).get_trade_decisions(None)
    assert responses[0].action == "long" and responses[0].error is None
    assert "HTTP 500" in responses[1].error
    assert "connection reset" in responses[2].error
    assert responses[1].cost == 0.0
    assert not responses[2].is_directional


def test_slow_call_times_out(screen_config):
    release = threading.Event()

    class BlockingHttp(FakeHttp):
        def post(self, url, headers=None, json=None, timeout=None):
            if json["temperature"] == 0.8:
                release.wait(5)
            return super().post(url, headers=headers, json=json, timeout=timeout)

    screen_config.timeout_ms = 200
    http = BlockingHttp({0.2: {"action": "long"}, 0.5: {"action": "long"}, 0.8: {"action": "long"}})
    try:
        responses = LlmApiService(screen_config, http=http, environ=ENV).get_trade_decisions(None)
    finally:
        release.set()

    assert [r.action for r in responses[:2]] == ["long", "long"]
    assert responses[2].error.startswith("Timed out")
    assert responses[2].cost == 0.0
