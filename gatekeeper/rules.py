"""
Rule helpers shared by the share page and the verifier: which claim flow a
rule needs, and keeping secret answers out of anything a claimer can read.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional


class QuestMode(str, Enum):
    TRIVIA = "TRIVIA"
    GEO = "GEO"
    WALLET = "WALLET"


HIDDEN = "[HIDDEN]"
GENERIC_TRIVIA_HINT = "Answer the question correctly to claim this reward."
GENERIC_REJECTION = "The answer provided does not meet the requirement."

# social rules are answered in the text box like trivia
_SOCIAL_RE = re.compile(r"discord|twitter|follow|youtube|\brole\b|username|handle", re.IGNORECASE)
_GEO_RE = re.compile(
    r"location|\bgps\b|\bis in\b|should be in|must be in|country|geographical|region|\bvpn\b|\bcity\b",
    re.IGNORECASE,
)
_WALLET_RE = re.compile(
    r"\beth\b|should have|must hold|must have|\bhold|tokens?\b|wallet|network|balance|\bnft",
    re.IGNORECASE,
)

_KEYWORDS = r"secret|password|passphrase|keyword|key word|code word"
# generic nouns need an explicit marker before the secret
_WEAK_KEYWORDS = r"code|word|phrase"
_STOP_WORDS = r"secret|password|passphrase|keyword|code|word|phrase|is|the|a|an|to|be|able|required|needed"
_SECRET_RE = re.compile(
    rf"\b(?:{_KEYWORDS})\b(?:\s+is)?\s*[:=]?\s*['\"“‘]?(?!(?:{_STOP_WORDS})\b)([A-Za-z0-9_\-]+)",
    re.IGNORECASE,
)
_WEAK_SECRET_RE = re.compile(
    rf"\b(?:{_WEAK_KEYWORDS})\b(?:\s+is\s*[:=]?\s*['\"“‘]?|\s*[:=]\s*['\"“‘]?|\s*['\"“‘])(?!(?:{_STOP_WORDS})\b)([A-Za-z0-9_\-]+)",
    re.IGNORECASE,
)
_MUST_SAY_RE = re.compile(r"\bmust\s+(?:say|enter|type)\s+['\"“‘]?([A-Za-z0-9_\-]+)", re.IGNORECASE)
_QUOTED_RE = re.compile(r"(['\"“‘])([^'\"“”‘’]{1,49})(['\"”’])")


def classify_quest_mode(rule: str, hint: Optional[str] = None) -> QuestMode:
    hint = (hint or "").lower()
    if _SOCIAL_RE.search(rule):
        return QuestMode.TRIVIA
    if hint == "geo" or _GEO_RE.search(rule):
        return QuestMode.GEO
    if hint == "wallet" or _WALLET_RE.search(rule):
        return QuestMode.WALLET
    return QuestMode.TRIVIA


def secret_terms(rule: str) -> List[str]:
    """Words a secret-keyword rule expects the claimer to type."""
    found: List[str] = []
    for pattern in (_SECRET_RE, _WEAK_SECRET_RE, _MUST_SAY_RE):
        for m in pattern.finditer(rule or ""):
            term = m.group(1)
            if term and term.lower() not in (t.lower() for t in found):
                found.append(term)
    return found


def is_secret_quest(rule: str) -> bool:
    return bool(secret_terms(rule))


def sanitize_rule_for_display(rule: str) -> str:
    terms = secret_terms(rule)
    if terms:
        sanitized = _QUOTED_RE.sub(lambda m: f"{m.group(1)}{HIDDEN}{m.group(3)}", rule)
        for term in terms:
            sanitized = re.sub(rf"(?<![A-Za-z0-9_]){re.escape(term)}(?![A-Za-z0-9_])", HIDDEN, sanitized, flags=re.IGNORECASE)
        return sanitized

    lowered = rule.lower()
    if "answer" in lowered and (" is " in lowered or "=" in lowered):
        return GENERIC_TRIVIA_HINT
    return rule


def leaks_secret(explanation: str, rule: str) -> bool:
    text = (explanation or "").lower()
    return any(len(term) > 1 and term.lower() in text for term in secret_terms(rule))
