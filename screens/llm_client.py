"""
Anthropic Messages API client for chart confirmation calls.

One call = one POST /v1/messages with the chart image (base64) and the prompt.
N calls are fanned out on a thread pool and joined before returning; every
call settles to an LlmResponse, failures included, so the caller can count
votes and bill cost without exception handling of its own.

Pricing used for cost accounting:
    $3 per million input tokens, $15 per million output tokens
"""

from __future__ import annotations

import base64
import concurrent.futures
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from errors import LlmCallError

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

INPUT_COST_PER_MILLION_TOKENS = 3.0
OUTPUT_COST_PER_MILLION_TOKENS = 15.0

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_TEMPERATURE = 0.5
FALLBACK_PROMPT = "Analyze this chart for a trade."

ACTIONS = ("long", "short", "do_nothing")

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


@dataclass
class LlmResponse:
    action: str = "do_nothing"
    rationalization: Optional[str] = None
    proposed_stop_loss: Optional[float] = None
    proposed_profit_target: Optional[float] = None
    confidence: Optional[float] = None
    cost: float = 0.0
    error: Optional[str] = None
    raw_text: Optional[str] = None

    @property
    def is_directional(self) -> bool:
        return self.error is None and self.action in ("long", "short")


def calculate_cost(usage: Optional[Mapping[str, Any]]) -> float:
    if not usage:
        return 0.0
    input_tokens = float(usage.get("input_tokens") or 0)
    output_tokens = float(usage.get("output_tokens") or 0)
    return (
        input_tokens / 1_000_000 * INPUT_COST_PER_MILLION_TOKENS
        + output_tokens / 1_000_000 * OUTPUT_COST_PER_MILLION_TOKENS
    )


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def extract_json_text(text: str) -> str:
    """Strip a fenced code block and stray backticks around a JSON payload."""
    match = _CODE_BLOCK_RE.search(text or "")
    body = match.group(1).strip() if match else (text or "").strip()
    return body.strip("`").strip()


def parse_llm_text(text: str, cost: float = 0.0) -> LlmResponse:
    """
    Parse the model's JSON answer.

    Anything unparseable still yields a response: the call happened and was
    billed, it just votes do_nothing.
    """
    response = LlmResponse(cost=cost, raw_text=text)
    try:
        payload = json.loads(extract_json_text(text))
    except ValueError as exc:
        logger.warning("LLM response is not valid JSON (%s): %.120s", exc, text)
        return response
    if not isinstance(payload, dict):
        logger.warning("LLM response JSON is not an object: %.120s", text)
        return response

    action = payload.get("action")
    if isinstance(action, str) and action in ACTIONS:
        response.action = action
    if isinstance(payload.get("rationalization"), str):
        response.rationalization = payload["rationalization"]
    response.proposed_stop_loss = _number(payload.get("proposedStopLoss"))
    response.proposed_profit_target = _number(payload.get("proposedProfitTarget"))
    response.confidence = _number(payload.get("confidence"))
    return response


def build_prompts(prompts: Any, num_calls: int) -> List[str]:
    """One prompt per call: a single string is reused, a list must match num_calls."""
    if isinstance(prompts, (list, tuple)):
        if len(prompts) == num_calls:
            return [str(p) for p in prompts]
        logger.warning(
            "Number of prompts (%d) does not match num_calls (%d). Using the first prompt for all calls.",
            len(prompts),
            num_calls,
        )
        first = str(prompts[0]) if prompts else FALLBACK_PROMPT
        return [first] * num_calls
    return [str(prompts or FALLBACK_PROMPT)] * num_calls


def temperature_for_call(temperatures: Optional[List[float]], index: int) -> float:
    if not temperatures:
        return DEFAULT_TEMPERATURE
    if index < len(temperatures) and temperatures[index] is not None:
        return float(temperatures[index])
    return float(temperatures[0])


def read_chart_image(chart_path: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """(base64 data, media type) for the chart, or (None, None) when there is nothing usable."""
    if not chart_path:
        return None, None
    media_type = _MEDIA_TYPES.get(os.path.splitext(chart_path)[1].lower())
    if media_type is None:
        logger.warning("Unsupported chart format for LLM call: %s", chart_path)
        return None, None
    try:
        with open(chart_path, "rb") as f:
            data = f.read()
    except FileNotFoundError:
        logger.warning("Chart image not found at %s. Proceeding without image for LLM call.", chart_path)
        return None, None
    except OSError as exc:
        raise LlmCallError(f"Failed to read chart image: {exc}", chart_path=chart_path) from exc
    return base64.b64encode(data).decode("ascii"), media_type


def compose_prompt(prompt: str, market_metrics_text: Optional[str], suffix: Optional[str]) -> str:
    parts = [prompt]
    if market_metrics_text:
        parts.append(f"\n\nMarket context at signal time:\n{market_metrics_text}")
    if suffix:
        parts.append(suffix)
    return "".join(parts)


def _message_text(data: Mapping[str, Any]) -> str:
    content = data.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        return str(content[0].get("text") or "")
    return ""


class LlmApiService:
    """Fan-out client over the Anthropic Messages API."""

    def __init__(self, screen_config, http=None, environ: Optional[Mapping[str, str]] = None):
        self.config = screen_config
        self.http = http or requests
        env = os.environ if environ is None else environ
        self.api_key = env.get(screen_config.api_key_env_var)
        if not self.api_key:
            logger.warning(
                "LLM API key not found in environment variable %s. No LLM calls will be made.",
                screen_config.api_key_env_var,
            )

    def is_enabled(self) -> bool:
        return bool(self.api_key) and self.config.llm_provider == "anthropic"

    @property
    def timeout_seconds(self) -> float:
        if self.config.timeout_ms:
            return self.config.timeout_ms / 1000.0
        return DEFAULT_TIMEOUT_SECONDS

    def build_request_body(
        self,
        prompt: str,
        temperature: float,
        image_data: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        if image_data and media_type:
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": image_data},
                }
            )
        content.append({"type": "text", "text": prompt})
        body: Dict[str, Any] = {
            "model": self.config.model_name,
            "max_tokens": self.config.max_output_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if self.config.system_prompt:
            body["system"] = self.config.system_prompt
        return body

    def call_once(self, index: int, body: Dict[str, Any]) -> LlmResponse:
        """Single API call; never raises for API or transport failures."""
        cost = 0.0
        headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        try:
            resp = self.http.post(ANTHROPIC_API_URL, headers=headers, json=body, timeout=self.timeout_seconds)
            if resp.status_code != 200:
                raise LlmCallError(f"HTTP {resp.status_code} {resp.text[:200]}", call=index + 1)
            data = resp.json()
            if not isinstance(data, dict):
                raise LlmCallError("Unexpected response body", call=index + 1)
            cost = calculate_cost(data.get("usage"))
            return parse_llm_text(_message_text(data), cost)
        except (requests.RequestException, ValueError, LlmCallError) as exc:
            logger.error("Error in LLM API call %d to %s: %s", index + 1, self.config.model_name, exc)
            return LlmResponse(error=str(exc), cost=cost, raw_text=f"API Call Failed: {exc}")

    def get_trade_decisions(
        self, chart_path: Optional[str], market_metrics_text: Optional[str] = None
    ) -> List[LlmResponse]:
        """Dispatch num_calls independent calls and return their settled responses in call order."""
        num_calls = max(int(self.config.num_calls or 1), 1)
        if not self.is_enabled():
            return [LlmResponse(error="Service not enabled or not configured.") for _ in range(num_calls)]

        image_data, media_type = read_chart_image(chart_path)
        if image_data is None:
            logger.info("No image data for LLM call. Prompting with text only.")

        prompts = build_prompts(self.config.prompts, num_calls)
        bodies = [
            self.build_request_body(
                compose_prompt(prompts[i], market_metrics_text, self.config.common_prompt_suffix_for_json),
                temperature_for_call(self.config.temperatures, i),
                image_data,
                media_type,
            )
            for i in range(num_calls)
        ]

        timeout = self.timeout_seconds
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=num_calls)
        futures = [executor.submit(self.call_once, i, body) for i, body in enumerate(bodies)]
        responses: List[LlmResponse] = []
        try:
            deadline = time.monotonic() + timeout
            for i, future in enumerate(futures):
                remaining = max(deadline - time.monotonic(), 0.0)
                try:
                    responses.append(future.result(timeout=remaining))
                except concurrent.futures.TimeoutError:
                    future.cancel()
                    logger.error("LLM API call %d timed out after %.1fs", i + 1, timeout)
                    responses.append(LlmResponse(error=f"Timed out after {timeout:.1f}s"))
        except KeyboardInterrupt:
            for future in futures:
                future.cancel()
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return responses
