"""
riskguard/analysis/context.py
==============================
Context Legitimacy Analysis — RiskGuard

Responsibility:
    - Estimate how legitimate a feedback message is (0–100, higher = more
      legitimate) from its text and call context
    - Heuristic scoring ALWAYS runs and is the deterministic fallback
    - When an OpenAI API key is configured, ask the LLM (gpt-4o-mini,
      temperature=0.0, JSON reply) for the legitimacy score through the
      ResilienceGuard (``openai`` breaker + retry)
    - Any LLM failure (network, breaker open, malformed reply) falls back
      to the heuristic result; this module never raises for LLM problems

Heuristic factors:
    - message too short, gibberish (few letters / few vowels)
    - long runs of a repeated character, shouting (mostly upper case)
    - very short calls (< 10 s)
    - red-flag keywords (penalty scales with the highest severity)
    - store name given in session metadata but never mentioned

This module does NOT:
    - Combine scores into a verdict (see engine.py)
    - Persist anything
"""

import json
import logging
import re
from typing import Any

from riskguard.analysis.keywords import detect_keywords
from riskguard.models import (
    FraudAnalysisRequest,
    FraudIndicator,
    clamp_score,
    severity_from_score,
)

logger = logging.getLogger("riskguard.analysis.context")


# ---------------------------------------------------------------------------
# Heuristic configuration
# ---------------------------------------------------------------------------

BASELINE_LEGITIMACY: float = 85.0
MIN_MESSAGE_CHARS: int = 10
MIN_CALL_SECONDS: int = 10
KEYWORD_PENALTY_PER_SEVERITY: float = 4.0

_PENALTIES: dict[str, float] = {
    "message_too_short": 25.0,
    "gibberish": 30.0,
    "repeated_characters": 15.0,
    "shouting": 10.0,
    "very_short_call": 15.0,
    "store_not_mentioned": 5.0,
}

_FACTOR_DESCRIPTIONS: dict[str, str] = {
    "message_too_short": "Feedback message is too short to be meaningful",
    "gibberish": "Feedback text looks like random characters",
    "repeated_characters": "Feedback contains long runs of repeated characters",
    "shouting": "Feedback is written mostly in capital letters",
    "very_short_call": "Call was too short for genuine feedback",
    "store_not_mentioned": "Feedback never refers to the store",
    "red_flag_language": "Feedback contains red-flag language",
}

_REPEATED = re.compile(r"(.)\1{4,}")
_VOWELS = set("aeiouyåäöéü")


def _gibberish(text: str) -> bool:
    chars = [c for c in text if not c.isspace()]
    if len(chars) < MIN_MESSAGE_CHARS:
        return False
    letters = [c.lower() for c in chars if c.isalpha()]
    if len(letters) / len(chars) < 0.6:
        return True
    vowels = sum(1 for c in letters if c in _VOWELS)
    return bool(letters) and vowels / len(letters) < 0.2


def _shouting(text: str) -> bool:
    letters = [c for c in text if c.isalpha()]
    return len(letters) >= 20 and sum(1 for c in letters if c.isupper()) / len(letters) > 0.7


def heuristic_legitimacy(request: FraudAnalysisRequest) -> dict[str, Any]:
    """
    Deterministic legitimacy estimate.

    Returns:
        {"legitimacy_score": float, "factors": list[str], "source": "heuristic"}
    """
    text = request.message_text.strip()
    factors: list[str] = []

    if len(text) < MIN_MESSAGE_CHARS:
        factors.append("message_too_short")
    if _gibberish(text):
        factors.append("gibberish")
    if _REPEATED.search(text):
        factors.append("repeated_characters")
    if _shouting(text):
        factors.append("shouting")
    if request.call_duration is not None and request.call_duration < MIN_CALL_SECONDS:
        factors.append("very_short_call")

    store_name = request.session_metadata.get("store_name")
    if isinstance(store_name, str) and store_name.strip() and store_name.lower() not in text.lower():
        factors.append("store_not_mentioned")

    score = BASELINE_LEGITIMACY - sum(_PENALTIES[f] for f in factors)

    keyword_hits = detect_keywords(text)
    if keyword_hits["total_matches"]:
        factors.append("red_flag_language")
        score -= keyword_hits["highest_severity"] * KEYWORD_PENALTY_PER_SEVERITY

    return {
        "legitimacy_score": clamp_score(score),
        "factors": factors,
        "keyword_codes": [i.code for i in keyword_hits["indicators"]],
        "source": "heuristic",
    }


def context_indicators(result: dict[str, Any]) -> list[FraudIndicator]:
    """
    One indicator per heuristic factor, plus one for low overall legitimacy.

    Red-flag language is reported under the keyword check's own codes
    (``keyword_<category>``) so the merge keeps one indicator per category.
    """
    risk = 100.0 - result["legitimacy_score"]
    indicators: list[FraudIndicator] = []
    for factor in result.get("factors", []):
        codes = [factor]
        if factor == "red_flag_language":
            codes = result.get("keyword_codes") or codes
        for code in codes:
            indicators.append(FraudIndicator(
                type="context",
                severity=severity_from_score(risk),
                description=_FACTOR_DESCRIPTIONS.get(factor, factor),
                confidence=0.6,
                code=code,
            ))
    if result["legitimacy_score"] < 60:
        indicators.append(FraudIndicator(
            type="context",
            severity=severity_from_score(risk),
            description=f"Low context legitimacy ({result['legitimacy_score']:.0f}/100)",
            confidence=0.8 if result.get("source") == "llm" else 0.65,
            code="low_context_legitimacy",
        ))
    return indicators


# ---------------------------------------------------------------------------
# LLM-backed analysis
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT: str = (
    "You assess whether customer feedback given in a phone call to a store "
    "is genuine. You receive the feedback text and call context as JSON.\n\n"
    "RULES:\n"
    "- Reply with a JSON object only: "
    '{"legitimacy_score": <integer 0-100>, "reasons": [<short strings>]}.\n'
    "- 100 means clearly genuine feedback; 0 means clearly fabricated, "
    "nonsensical, threatening or abusive.\n"
    "- Do NOT include any other keys or any text outside the JSON object.\n"
)


def _build_llm_input(request: FraudAnalysisRequest) -> str:
    return json.dumps({
        "message_text": request.message_text,
        "call_duration_seconds": request.call_duration,
        "store_name": request.session_metadata.get("store_name"),
        "language": request.session_metadata.get("language", "sv"),
    }, ensure_ascii=False)


def _parse_llm_reply(content: str | None) -> dict[str, Any]:
    """
    Validate the LLM reply.

    Raises:
        ValueError: If the reply is empty, not JSON or out of range.
    """
    if not content:
        raise ValueError("OpenAI returned empty response")
    data = json.loads(content)
    score = data.get("legitimacy_score") if isinstance(data, dict) else None
    if not isinstance(score, (int, float)) or isinstance(score, bool) or not 0 <= score <= 100:
        raise ValueError(f"Invalid legitimacy_score in reply: {score!r}")
    reasons = data.get("reasons") or []
    return {
        "legitimacy_score": clamp_score(score),
        "reasons": [str(r) for r in reasons][:5] if isinstance(reasons, list) else [],
    }


class ContextAnalyzer:
    """
    Args:
        guard:   ResilienceGuard used for the LLM call.
        api_key: OpenAI key; without it (and without ``client``) only the
                 heuristic runs.
        model:   Chat model name.
        client:  Pre-built ``AsyncOpenAI``-compatible client (tests).
    """

    BREAKER_NAME = "openai"

    def __init__(
        self,
        guard: Any = None,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        client: Any = None,
        retry_config: Any = None,
    ) -> None:
        self._guard = guard
        self._model = model
        self._retry_config = retry_config
        self._client = client
        if self._client is None and api_key:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=api_key)

    @property
    def llm_enabled(self) -> bool:
        return self._client is not None

    async def _call_llm(self, request: FraudAnalysisRequest) -> dict[str, Any]:
        async def _create():
            return await self._client.chat.completions.create(
                model=self._model,
                temperature=0.0,
                max_tokens=150,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": _build_llm_input(request)},
                ],
            )

        if self._guard is not None:
            response = await self._guard.call(self.BREAKER_NAME, _create, self._retry_config)
        else:
            response = await _create()
        return _parse_llm_reply(response.choices[0].message.content)

    async def analyze(self, request: FraudAnalysisRequest) -> dict[str, Any]:
        """
        Score one request's context.

        Returns:
            {
                "legitimacy_score": float (0–100),
                "factors": list[str],
                "source": "llm" | "heuristic",
                "reasons": list[str] (LLM only),
                "indicators": list[FraudIndicator],
            }
        """
        result = heuristic_legitimacy(request)

        if self.llm_enabled:
            try:
                reply = await self._call_llm(request)
                result = {
                    **result,
                    "legitimacy_score": reply["legitimacy_score"],
                    "source": "llm",
                    "reasons": reply["reasons"],
                }
                logger.info(
                    "LLM context legitimacy for %s: %.1f",
                    request.request_id, result["legitimacy_score"],
                )
            except Exception as exc:
                logger.warning(
                    "LLM context analysis failed (%s), "
                    "falling back to heuristic legitimacy",
                    exc,
                )

        result["indicators"] = context_indicators(result)
        return result
