"""
riskguard/analysis/keywords.py
===============================
Red-Flag Keyword Detection — RiskGuard

Responsibility:
    - Match message text against a table of red-flag keyword patterns
      (Swedish and English; nonsensical, threats, profanity, impossible)
    - Produce a 0–100 keyword risk score and one indicator per category

Scoring:
    keyword_score = min(100, 10 * highest_severity + 5 * (matches - 1))

This module does NOT:
    - Store or manage the keyword table (it is passed in or defaulted)
    - Decide whether a request is fraud
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from riskguard.models import FraudIndicator, severity_from_score

logger = logging.getLogger("riskguard.analysis.keywords")


@dataclass(frozen=True)
class RedFlagKeyword:
    keyword: str
    category: str
    severity: int
    language: str
    pattern: re.Pattern = field(compare=False)


def _kw(keyword: str, category: str, severity: int, language: str, pattern: str) -> RedFlagKeyword:
    return RedFlagKeyword(keyword, category, severity, language, re.compile(pattern, re.I))


DEFAULT_KEYWORDS: tuple[RedFlagKeyword, ...] = (
    # nonsensical
    _kw("flygande elefanter", "nonsensical", 8, "sv", r"\b(flygande\s+elefanter|flying\s+elephants)\b"),
    _kw("teleportering", "nonsensical", 7, "sv", r"\bteleporter(ing|ade)\b"),
    _kw("tidsresor", "nonsensical", 9, "sv", r"\btidsres(a|or|ande)\b"),
    _kw("magiska krafter", "nonsensical", 6, "sv", r"\bmagiska?\s+krafter\b"),
    _kw("levitating", "nonsensical", 7, "en", r"\blevitat(ing|ed)\b"),
    # threats
    _kw("bomb", "threats", 10, "sv", r"\bbomb(er|en|ade)?\b"),
    _kw("hot", "threats", 8, "sv", r"\bhot(ar|ade|else)\b"),
    _kw("våld", "threats", 9, "sv", r"\bvåld(sam|samma|t)?\b"),
    _kw("skada", "threats", 7, "sv", r"\bskada(r|de|des)?\b"),
    _kw("döda", "threats", 10, "sv", r"\bdöd(a|ar|ade)\b"),
    # profanity
    _kw("helvete", "profanity", 5, "sv", r"\bhelvet(e|es)\b"),
    # bare "fan" is also an English word; only Swedish expletive forms count
    _kw("fan", "profanity", 4, "sv",
        r"\b(?:(?:fy|för|va|vad|jävla)\s+fan|fan\s+(?:också|heller|ta\s+(?:dig|det))|fanskap\w*)\b"),
    _kw("skit", "profanity", 3, "sv", r"\bskit(en|ig|igt)?\b"),
    # impossible claims
    _kw("gratis allt", "impossible", 8, "sv", r"\bgratis\s+allt\b"),
    _kw("miljoner kronor", "impossible", 9, "sv", r"\bmiljoner?\s+kronor\b"),
    _kw("omedelbar betalning", "impossible", 7, "sv", r"\bomedelbar(t)?\s+betalning(ar)?\b"),
)

_CATEGORY_LABELS: dict[str, str] = {
    "nonsensical": "Nonsensical content",
    "threats": "Threatening language",
    "profanity": "Profanity",
    "impossible": "Impossible claims",
}


def detect_keywords(
    text: str,
    keywords: tuple[RedFlagKeyword, ...] = DEFAULT_KEYWORDS,
) -> dict[str, Any]:
    """
    Scan ``text`` for red-flag keywords.

    Returns:
        {
            "keyword_score": float (0–100),
            "total_matches": int,
            "highest_severity": int (0 when nothing matched),
            "matches": [{"keyword", "category", "severity"}, ...],
            "indicators": list[FraudIndicator],
        }
    """
    matches = [k for k in keywords if k.pattern.search(text or "")]

    if not matches:
        return {
            "keyword_score": 0.0,
            "total_matches": 0,
            "highest_severity": 0,
            "matches": [],
            "indicators": [],
        }

    highest = max(k.severity for k in matches)
    score = float(min(100, 10 * highest + 5 * (len(matches) - 1)))

    indicators: list[FraudIndicator] = []
    for category in dict.fromkeys(k.category for k in matches):
        hits = [k for k in matches if k.category == category]
        top = max(k.severity for k in hits)
        indicators.append(FraudIndicator(
            type="keyword",
            severity=severity_from_score(top * 10),
            description=f"{_CATEGORY_LABELS.get(category, category)}: "
                        + ", ".join(k.keyword for k in hits),
            confidence=round(min(0.5 + top / 20, 0.95), 2),
            code=f"keyword_{category}",
        ))

    logger.info(
        "Keyword matches: %d (highest severity %d) -> score %.1f",
        len(matches), highest, score,
    )

    return {
        "keyword_score": score,
        "total_matches": len(matches),
        "highest_severity": highest,
        "matches": [
            {"keyword": k.keyword, "category": k.category, "severity": k.severity}
            for k in matches
        ],
        "indicators": indicators,
    }
