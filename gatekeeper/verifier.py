"""
Verification service: evaluate a rule, parse the verdict, issue a proof on approval.
"""

from __future__ import annotations

import logging

from .errors import ModelExhaustionError
from .evaluator import RuleEvaluator
from .models import UserContext, VerificationDecision
from .observability import track
from .parser import parse
from .proofs import ProofIssuer
from .rules import GENERIC_REJECTION, leaks_secret

log = logging.getLogger(__name__)

UNAVAILABLE_EXPLANATION = "Verification is temporarily unavailable. Please try again later."


class Verifier:
    def __init__(self, evaluator: RuleEvaluator, proofs: ProofIssuer) -> None:
        self.evaluator = evaluator
        self.proofs = proofs

    @track(name="verify_rule")
    async def verify(self, rule: str, user_context: UserContext) -> VerificationDecision:
        log.info("[VERIFY] rule=%r address=%s", rule[:120], user_context.address)
        try:
            result = await self.evaluator.evaluate(rule, user_context)
        except ModelExhaustionError as e:
            log.error("[VERIFY] %s: %s", e, "; ".join(e.diagnostics))
            return VerificationDecision(approved=False, explanation=UNAVAILABLE_EXPLANATION, strategy="exhausted")

        decision = parse(result.text, result.tool_log, rule)
        if not decision.approved and leaks_secret(decision.explanation, rule):
            log.info("[VERIFY] Rejection explanation mentioned the secret answer, replaced")
            decision.explanation = GENERIC_REJECTION
        if decision.approved:
            decision.proof_token = self.proofs.issue(rule=rule, address=user_context.address)

        log.info(
            "[VERIFY] approved=%s model=%s turns=%d tools=%d",
            decision.approved,
            result.model,
            result.turns,
            len(result.tool_log),
        )
        return decision
