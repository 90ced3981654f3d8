"""
Advisory oracle client.

Asks an OpenAI-compatible chat-completions service whether to execute an
opportunity. The answer must be a single JSON object (bare, or inside one
fenced code block) matching the decision schema exactly; anything else is a
parse failure. Every failure path returns ExecutionDecision.conservative(),
so the oracle can only ever veto, never force, an execution.
"""

import asyncio
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import aiohttp

from amm_arbitrage.exceptions import OracleError
from amm_arbitrage.pool import Pool
from amm_arbitrage.types import ArbitrageOpportunity, ExecutionDecision, Urgency
from amm_arbitrage.utils import get_logger, safe_json_dump

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "qwen/qwen3-coder:free"

SYSTEM_PROMPT = (
    "You are an expert DeFi arbitrage analyst. Analyze opportunities and "
    "answer with a single JSON object and nothing else."
)

DECISION_INSTRUCTIONS = """Decide whether to execute this arbitrage opportunity.
Answer with exactly one JSON object with these keys:
  "execute": true or false
  "confidence": number between 0 and 1
  "reasoning": string
  "recommended_amount": string ("same", "decrease", "increase" or an amount)
  "max_slippage": number, percent (0.5 means 0.5%)
  "urgency": "low", "medium" or "high"
  "risks": list of strings"""

MARKET_INSTRUCTIONS = """Assess current market conditions from these opportunities.
Answer with exactly one JSON object with these keys:
  "summary": string
  "volatility": "low", "medium" or "high"
  "trend": "bullish", "bearish" or "neutral"
  "opportunities": list of strings
  "warnings": list of strings"""

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n(.*?)```", re.DOTALL)

TRENDS = ("bullish", "bearish", "neutral")


@dataclass(frozen=True)
class MarketAnalysis:
    summary: str
    volatility: Urgency = Urgency.MEDIUM
    trend: str = "neutral"
    opportunities: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @classmethod
    def neutral(cls, reason: str) -> "MarketAnalysis":
        return cls(summary="Market analysis unavailable", warnings=(reason,))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "volatility": self.volatility.value,
            "trend": self.trend,
            "opportunities": list(self.opportunities),
            "warnings": list(self.warnings),
        }


class TransientOracleError(OracleError):
    """Failure worth retrying: timeout, connection error, 429 or 5xx."""

    def __init__(self, message: str, rate_limited: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.rate_limited = rate_limited


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the JSON object in a model answer.

    Accepts a bare object or exactly one fenced code block holding one.

    Raises:
        OracleError: anything else
    """
    if not isinstance(text, str) or not text.strip():
        raise OracleError("Empty oracle answer")
    stripped = text.strip()

    if not stripped.startswith("{"):
        blocks = _FENCE_RE.findall(stripped)
        if len(blocks) != 1:
            raise OracleError(
                f"Expected one JSON object or one fenced block, found {len(blocks)} blocks",
                details={"answer": stripped[:500]},
            )
        stripped = blocks[0].strip()

    try:
        data = json.loads(stripped)
    except (ValueError, RecursionError) as e:
        raise OracleError(f"Oracle answer is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise OracleError("Oracle answer is not a JSON object")
    return data


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and (isinstance(value, int) or math.isfinite(value))
    )


def _require(data: Dict[str, Any], key: str, check, description: str) -> Any:
    if key not in data:
        raise OracleError(f"Oracle answer missing '{key}'")
    value = data[key]
    if not check(value):
        raise OracleError(f"Oracle field '{key}' must be {description}, got {value!r}")
    return value


def _string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def parse_decision(text: str) -> ExecutionDecision:
    """Validate a model answer against the decision schema."""
    data = extract_json_object(text)
    execute = _require(data, "execute", lambda v: isinstance(v, bool), "a boolean")
    confidence = _require(
        data, "confidence", lambda v: _is_number(v) and 0 <= v <= 1, "a number in [0, 1]"
    )
    reasoning = _require(data, "reasoning", lambda v: isinstance(v, str), "a string")
    recommended = _require(
        data, "recommended_amount", lambda v: isinstance(v, str), "a string"
    )
    slippage = _require(
        data,
        "max_slippage",
        lambda v: _is_number(v) and 0 <= v < 100,
        "a percentage in [0, 100)",
    )
    urgency = _require(
        data,
        "urgency",
        lambda v: v in {u.value for u in Urgency},
        "one of low, medium, high",
    )
    risks = _require(data, "risks", _string_list, "a list of strings")

    return ExecutionDecision(
        execute=execute,
        confidence=float(confidence),
        reasoning=reasoning,
        recommended_amount=recommended,
        max_slippage=float(slippage),
        urgency=Urgency(urgency),
        risks=tuple(risks),
    )


def parse_market_analysis(text: str) -> MarketAnalysis:
    data = extract_json_object(text)
    summary = _require(data, "summary", lambda v: isinstance(v, str), "a string")
    volatility = _require(
        data,
        "volatility",
        lambda v: v in {u.value for u in Urgency},
        "one of low, medium, high",
    )
    trend = _require(data, "trend", lambda v: v in TRENDS, "one of " + ", ".join(TRENDS))
    opportunities = _require(data, "opportunities", _string_list, "a list of strings")
    warnings = _require(data, "warnings", _string_list, "a list of strings")
    return MarketAnalysis(
        summary=summary,
        volatility=Urgency(volatility),
        trend=trend,
        opportunities=tuple(opportunities),
        warnings=tuple(warnings),
    )


# ----------------------------------------------------------------------
# Prompts
# ----------------------------------------------------------------------


def opportunity_summary(
    opportunity: ArbitrageOpportunity, pools: Sequence[Pool]
) -> Dict[str, Any]:
    summary = opportunity.to_dict()
    summary["pool_state"] = [pool.to_dict() for pool in pools]
    return summary


def build_decision_prompt(
    opportunity: ArbitrageOpportunity,
    pools: Sequence[Pool],
    market_context: Optional[str] = None,
) -> str:
    parts = [
        DECISION_INSTRUCTIONS,
        "",
        "Opportunity:",
        safe_json_dump(opportunity_summary(opportunity, pools)),
    ]
    if market_context:
        parts += ["", "Market context:", market_context]
    return "\n".join(parts)


def build_market_prompt(opportunities: Sequence[ArbitrageOpportunity]) -> str:
    top = [
        {
            "route": " -> ".join(o.route_symbols),
            "net_profit": float(o.net_profit),
            "profit_percent": float(o.profit_percent),
        }
        for o in list(opportunities)[:5]
    ]
    return "\n".join([MARKET_INSTRUCTIONS, "", "Top opportunities:", safe_json_dump(top)])


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------


class OracleClient:
    """
    Chat-completions client with bounded retries.

    Each attempt is bounded by `timeout` seconds. Transient failures back off
    backoff_base * attempt seconds (doubled when rate limited) before the
    next attempt; no attempt is made after max_attempts.
    """

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        max_tokens: int = 2000,
        temperature: float = 0.3,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._session = session

        self.attempts = 0
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "OracleClient":
        return cls(
            api_key=config.oracle_api_key,
            endpoint=config.oracle_endpoint,
            model=config.oracle_model,
            timeout=config.oracle_timeout,
            max_attempts=config.oracle_max_attempts,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def analyze_opportunity(
        self,
        opportunity: ArbitrageOpportunity,
        pools: Sequence[Pool],
        market_context: Optional[str] = None,
    ) -> ExecutionDecision:
        """
        Verdict for one opportunity. Never raises: every failure yields
        the conservative decision with the cause in `reasoning`.
        """
        prompt = build_decision_prompt(opportunity, pools, market_context)
        try:
            answer = await self.complete(prompt)
            decision = parse_decision(answer)
        except OracleError as e:
            self.last_error = str(e)
            logger.warning("Oracle verdict unavailable for %s: %s", opportunity.id, e)
            return ExecutionDecision.conservative(
                f"Advisory oracle failed, not executing: {e}", _risk_for(e)
            )

        logger.info(
            "Oracle verdict for %s: execute=%s confidence=%.2f urgency=%s",
            " -> ".join(opportunity.route_symbols),
            decision.execute,
            decision.confidence,
            decision.urgency.value,
        )
        return decision

    async def analyze_market(
        self, opportunities: Sequence[ArbitrageOpportunity]
    ) -> MarketAnalysis:
        try:
            answer = await self.complete(build_market_prompt(opportunities))
            return parse_market_analysis(answer)
        except OracleError as e:
            self.last_error = str(e)
            logger.warning("Market analysis unavailable: %s", e)
            return MarketAnalysis.neutral(f"Analysis service unavailable: {e}")

    async def complete(self, prompt: str) -> str:
        """
        Run one chat completion and return the assistant text.

        Raises:
            OracleError: missing credential, non-transient failure or
                retries exhausted
        """
        if not self.api_key:
            raise OracleError("Oracle credential not configured", endpoint=self.endpoint)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        last_error: Optional[TransientOracleError] = None
        for attempt in range(1, self.max_attempts + 1):
            self.attempts += 1
            try:
                status, body = await asyncio.wait_for(
                    self._send_request(payload), timeout=self.timeout
                )
                return self._read_completion(status, body)
            except asyncio.TimeoutError:
                last_error = TransientOracleError(
                    f"Oracle request timed out after {self.timeout}s",
                    endpoint=self.endpoint,
                )
            except aiohttp.ClientError as e:
                last_error = TransientOracleError(
                    f"Oracle connection error: {e}", endpoint=self.endpoint
                )
            except TransientOracleError as e:
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_base * attempt
                if last_error.rate_limited:
                    delay *= 2
                logger.info(
                    "%s; retry %d/%d in %.1fs",
                    last_error,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

        raise OracleError(
            f"{last_error} (gave up after {self.max_attempts} attempts)",
            endpoint=self.endpoint,
            status_code=last_error.status_code if last_error else None,
        )

    async def _send_request(self, payload: Dict[str, Any]) -> Tuple[int, Any]:
        """POST the payload; returns (HTTP status, decoded body)."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "amm-arbitrage-agent",
        }
        if self._session is not None:
            return await self._post(self._session, payload, headers)
        async with aiohttp.ClientSession() as session:
            return await self._post(session, payload, headers)

    async def _post(self, session, payload, headers) -> Tuple[int, Any]:
        async with session.post(self.endpoint, json=payload, headers=headers) as resp:
            # undecodable bytes become U+FFFD and fail schema checks later
            text = (await resp.read()).decode("utf-8", errors="replace")
            try:
                body = json.loads(text) if text else {}
            except (ValueError, RecursionError):
                body = {"raw": text[:500]}
            return resp.status, body

    def _read_completion(self, status: int, body: Any) -> str:
        error = body.get("error") if isinstance(body, dict) else None
        error_code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", "") if isinstance(error, dict) else str(error or "")

        if status == 429 or error_code == 429 or "rate-limited" in message:
            raise TransientOracleError(
                "Oracle rate limited", rate_limited=True, endpoint=self.endpoint,
                status_code=429,
            )
        if status >= 500:
            raise TransientOracleError(
                f"Oracle HTTP {status}", endpoint=self.endpoint, status_code=status
            )
        if status != 200 or error:
            raise OracleError(
                f"Oracle HTTP {status}: {message or body}",
                endpoint=self.endpoint,
                status_code=status,
            )

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleError("Oracle response has no completion text") from e
        if not isinstance(content, str):
            raise OracleError("Oracle completion text is not a string")
        return content


def _risk_for(error: OracleError) -> str:
    text = str(error)
    if "credential" in text:
        return "advisory oracle not configured"
    if "gave up" in text:
        return "advisory oracle unreachable"
    if "HTTP" in text:
        return "advisory oracle rejected request"
    return "advisory oracle answer unusable"
