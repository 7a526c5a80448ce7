"""
Turn free-text model output into a VerificationDecision.

Each strategy is a pure function (text, tool_log, rule) -> decision | None and
the first one that produces a decision wins. The cascade never raises and
falls back to a rejection when nothing usable is found. When the model produced
no text at all, the decision is rebuilt from the recorded tool results.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .chains import normalize_collection
from .errors import ParseError
from .models import ToolCallRecord, VerificationDecision

log = logging.getLogger(__name__)

Strategy = Callable[[str, Sequence[ToolCallRecord], str], Optional[VerificationDecision]]

DEFAULT_APPROVED_EXPLANATION = "Requirement verified."
DEFAULT_REJECTED_EXPLANATION = "Requirement not met."
UNVERIFIABLE_EXPLANATION = "Unable to verify the requirement."

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_FRAGMENT_RE = re.compile(r"\{[^{}]*\"approved\"\s*:\s*(?:true|false)[^{}]*\}", re.IGNORECASE | re.DOTALL)
_APPROVED_LITERAL_RE = re.compile(r"\"?approved\"?\s*[:=]\s*\"?(true|false)\b", re.IGNORECASE)
_EXPLANATION_RE = re.compile(r"\"explanation\"\s*:\s*\"((?:[^\"\\]|\\.)*)\"", re.IGNORECASE | re.DOTALL)
_APPROVAL_WORDS_RE = re.compile(r"\b(granted|approved|verified|passed|success|successful|yes)\b", re.IGNORECASE)
_REJECTION_WORDS_RE = re.compile(r"\b(denied|rejected|failed|incorrect|wrong|no)\b", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def decision_from_object(obj: Any, strategy: str) -> Optional[VerificationDecision]:
    if not isinstance(obj, dict) or "approved" not in obj:
        return None
    approved = obj["approved"]
    if isinstance(approved, str) and approved.strip().lower() in ("true", "false"):
        approved = approved.strip().lower() == "true"
    if not isinstance(approved, bool):
        return None
    explanation = obj.get("explanation")
    if explanation is None:
        explanation = DEFAULT_APPROVED_EXPLANATION if approved else DEFAULT_REJECTED_EXPLANATION
    elif not isinstance(explanation, str):
        explanation = json.dumps(explanation)
    return VerificationDecision(approved=approved, explanation=explanation, strategy=strategy)


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except ValueError as e:
        raise ParseError(f"not JSON: {e}") from e


# ---- strategies -------------------------------------------------------------


def parse_direct_json(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None
    return decision_from_object(_loads(cleaned), "direct_json")


def parse_brace_span(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return decision_from_object(_loads(text[start : end + 1]), "brace_span")


def parse_approved_fragment(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    for match in _FRAGMENT_RE.finditer(text):
        try:
            decision = decision_from_object(_loads(match.group(0)), "fragment")
        except ParseError:
            continue
        if decision is not None:
            return decision
    return None


def infer_approved_literal(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    m = _APPROVED_LITERAL_RE.search(text)
    if not m:
        return None
    approved = m.group(1).lower() == "true"
    explanation = DEFAULT_APPROVED_EXPLANATION if approved else DEFAULT_REJECTED_EXPLANATION
    em = _EXPLANATION_RE.search(text)
    if em:
        try:
            explanation = _loads(f'"{em.group(1)}"')
        except ParseError:
            explanation = em.group(1)
    return VerificationDecision(approved=approved, explanation=explanation, strategy="approved_literal")


def infer_from_keywords(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None
    approved = bool(_APPROVAL_WORDS_RE.search(cleaned)) and not _REJECTION_WORDS_RE.search(cleaned)
    explanation = cleaned if len(cleaned) <= 500 else cleaned[:497] + "..."
    return VerificationDecision(approved=approved, explanation=explanation, strategy="keywords")


def synthesize_from_tool_log(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> Optional[VerificationDecision]:
    if (text or "").strip():
        return None
    successes: List[str] = []
    failures: List[str] = []
    for record in tool_log:
        verdict = classify_tool_result(record, rule)
        if verdict is True:
            successes.append(record.tool_name)
        elif verdict is False:
            failures.append(record.tool_name)

    if successes and not failures:
        checks = ", ".join(sorted(set(successes)))
        return VerificationDecision(
            approved=True,
            explanation=f"Requirement verified from tool checks ({checks}).",
            strategy="tool_log",
        )
    explanation = DEFAULT_REJECTED_EXPLANATION if failures else UNVERIFIABLE_EXPLANATION
    return VerificationDecision(approved=False, explanation=explanation, strategy="tool_log")


STRATEGIES: Tuple[Strategy, ...] = (
    parse_direct_json,
    parse_brace_span,
    parse_approved_fragment,
    infer_approved_literal,
    infer_from_keywords,
    synthesize_from_tool_log,
)


def first_match(strategies: Sequence[Strategy]) -> Callable[[str, Sequence[ToolCallRecord], str], VerificationDecision]:
    def _run(text: str, tool_log: Sequence[ToolCallRecord], rule: str) -> VerificationDecision:
        for strategy in strategies:
            try:
                decision = strategy(text, tool_log, rule)
            except ParseError as e:
                log.debug("[PARSE] %s: %s", strategy.__name__, e)
                continue
            except Exception as e:
                log.warning("[PARSE] %s raised %s, trying next strategy", strategy.__name__, e)
                continue
            if decision is not None:
                return decision
        return VerificationDecision(approved=False, explanation=UNVERIFIABLE_EXPLANATION, strategy="default")

    return _run


_parse = first_match(STRATEGIES)


def parse(text: Optional[str], tool_log: Sequence[ToolCallRecord] = (), rule: str = "") -> VerificationDecision:
    decision = _parse(text or "", list(tool_log), rule or "")
    log.info("[PARSE] approved=%s via %s", decision.approved, decision.strategy)
    return decision


# ---- tool result predicates ------------------------------------------------

_THRESHOLD_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (">=", r"(?:>=|≥|\bat least|\bminimum of|\bmin\.?|\bno less than)"),
    ("<=", r"(?:<=|≤|\bat most|\bno more than|\bmaximum of|\bmax\.?)"),
    (">", r"(?:>|\bmore than|\bolder than|\bgreater than|\bover|\babove|\bexceeding)"),
    ("<", r"(?:<|\bless than|\bfewer than|\bunder|\bbelow)"),
)
_NUMBER = r"\s*\$?\s*(\d[\d,]*(?:\.\d+)?|\.\d+)"


def extract_threshold(rule: str) -> Optional[Tuple[str, Decimal]]:
    text = rule.lower()
    for op, words in _THRESHOLD_PATTERNS:
        m = re.search(words + _NUMBER, text)
        if m:
            try:
                return op, Decimal(m.group(1).replace(",", ""))
            except InvalidOperation:
                continue
    # bare "hold 100 USDC" means at least 100
    m = re.search(r"\b(?:hold|holds|have|has|own|owns)\s*\$?\s*(\d[\d,]*(?:\.\d+)?)", text)
    if m:
        return ">=", Decimal(m.group(1).replace(",", ""))
    return None


def _compare(value: Decimal, op: str, limit: Decimal) -> bool:
    return {
        ">=": value >= limit,
        "<=": value <= limit,
        ">": value > limit,
        "<": value < limit,
    }[op]


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def rule_negates(rule: str, names: Sequence[Optional[str]]) -> bool:
    text = rule.lower()
    normalized = normalize_collection(rule)
    for name in names:
        if not name:
            continue
        for haystack, needle in ((text, name.lower()), (normalized, normalize_collection(name))):
            if needle and re.search(
                rf"(?:\bnot\b|\bnever\b|\bno\b|\bwithout\b|n't\b|\bnon\b)[^.;]*?{re.escape(needle)}", haystack
            ):
                return True
    return False


def _parse_clock(hour: str, minute: Optional[str], meridiem: Optional[str]) -> int:
    h = int(hour) % 24
    if meridiem:
        meridiem = meridiem.lower()
        if meridiem == "pm" and h < 12:
            h += 12
        if meridiem == "am" and h == 12:
            h = 0
    return h * 60 + int(minute or 0)


_WINDOW_RE = re.compile(
    r"between\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*(?:and|to|-)\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)?",
    re.IGNORECASE,
)


def _time_verdict(result: Dict[str, Any], rule: str) -> Optional[bool]:
    m = _WINDOW_RE.search(rule)
    if not m:
        return None
    use_utc = bool(re.search(r"\b(utc|gmt)\b", rule, re.IGNORECASE))
    prefix = "utc" if use_utc else "local"
    if f"{prefix}_hour" not in result:
        return None
    now = int(result[f"{prefix}_hour"]) * 60 + int(result.get(f"{prefix}_minute", 0))
    end = _parse_clock(m.group(4), m.group(5), m.group(6))
    start = _parse_clock(m.group(1), m.group(2), m.group(3) or m.group(6))
    if not m.group(3) and (m.group(6) or "").lower() == "pm" and start > end:
        # "between 9 and 5pm" is 09:00-17:00, not 21:00-17:00
        start = _parse_clock(m.group(1), m.group(2), None)
    if start <= end:
        return start <= now < end
    return now >= start or now < end


def _wallet_verdict(result: Dict[str, Any], rule: str) -> bool:
    threshold = extract_threshold(rule)
    text = rule.lower()
    if threshold is None:
        return bool(result.get("tx_count", 0) > 0)
    op, limit = threshold
    if re.search(r"\b(transactions?|txs?|txns?)\b", text):
        value = _decimal(result.get("tx_count"))
    elif re.search(r"\b(days?|old|age)\b", text):
        value = _decimal(result.get("wallet_age_days"))
    else:
        value = _decimal(result.get("balance_eth"))
    if value is None or value < 0:
        return False
    return _compare(value, op, limit)


def classify_tool_result(record: ToolCallRecord, rule: str) -> Optional[bool]:
    """True = this check supports approval, False = it blocks approval, None = no verdict."""
    result = record.result or {}
    name = record.tool_name

    if name == "check_nft_ownership":
        if result.get("check_failed"):
            return False
        negated = rule_negates(rule, [result.get("collection"), record.args.get("collection_name"), result.get("contract")])
        owns = result.get("owns_nft") is True
        return (not owns) if negated else owns

    if name == "check_discord_membership":
        if result.get("error") or result.get("is_member") is not True:
            return False
        if result.get("has_role", True) is not True:
            return False
        threshold = extract_threshold(rule)
        if threshold is not None and re.search(r"\bdays?\b", rule, re.IGNORECASE):
            tenure = _decimal(result.get("tenure_days"))
            return tenure is not None and tenure >= 0 and _compare(tenure, *threshold)
        return True

    if name == "check_geo_sybil":
        if result.get("check_type") == "sybil":
            return result.get("is_sybil") is False and not result.get("check_failed")
        if result.get("is_blocked") or not result.get("location_verified"):
            return False
        places = [result.get("country"), result.get("city"), result.get("region")]
        places = [p for p in places if p and p != "Unknown"]
        for place in places:
            if place.lower() in rule.lower():
                return not rule_negates(rule, [place])
        if re.search(r"\b(sanction\w*|blocked|restricted|banned)\b", rule, re.IGNORECASE):
            return True
        return None

    if name == "check_token_balance":
        if result.get("error"):
            return False
        balance = _decimal(result.get("balance"))
        if balance is None:
            return False
        threshold = extract_threshold(rule)
        if threshold is None:
            return balance > 0
        return _compare(balance, *threshold)

    if name == "check_wallet_stats":
        if result.get("error"):
            return False
        return _wallet_verdict(result, rule)

    if name == "check_local_time":
        return _time_verdict(result, rule)

    return None
