"""
HTTP surface of the gatekeeper.

    POST /verify                     rule + user data -> {approved, explanation, proofToken?}
    POST /claim                      dropId + receiver + biometric assertion / proof token -> {success, txHash}
    GET  /check-claim/{dropId}       claim status of a drop
    GET  /check-claim/{dropId}/gatekeeper   gatekeeper address read from raw storage
    POST /rules/preview              quest mode + claimer-safe rule text
    GET  /health

Run with `gatekeeper-api` or `python -m gatekeeper.server`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .chains import ChainClients, is_address
from .claims import ClaimSubmitter
from .config import Settings
from .errors import ChainError, ConfigurationError, GatekeeperError, ProofError, SignatureError
from .evaluator import RuleEvaluator
from .models import ClaimRequest, RulePreviewRequest, VerifyRequest
from .observability import configure_tracing, tracing_enabled
from .proofs import InMemoryProofStore, ProofIssuer, ProofStore
from .registry import ToolRegistry
from .rules import classify_quest_mode, is_secret_quest, sanitize_rule_for_display
from .status import StatusReader
from .verifier import Verifier

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s :: %(message)s"


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _parse_drop_id(raw: str) -> Optional[int]:
    text = raw.strip()
    try:
        value = int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return None
    return value if value >= 0 else None


def create_app(
    settings: Optional[Settings] = None,
    *,
    verifier: Optional[Verifier] = None,
    claims: Optional[ClaimSubmitter] = None,
    status: Optional[StatusReader] = None,
    proof_store: Optional[ProofStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    clients = ChainClients(settings)

    if verifier is None:
        issuer = ProofIssuer(proof_store or InMemoryProofStore(), ttl_seconds=settings.proof_ttl_seconds)
        verifier = Verifier(RuleEvaluator(settings, ToolRegistry(settings, clients)), issuer)
    claims = claims or ClaimSubmitter(settings, verifier.proofs, clients)
    status = status or StatusReader(settings, clients)

    app = FastAPI(title="Gatekeeper Verification API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.verifier = verifier
    app.state.claims = claims
    app.state.status = status

    @app.post("/verify")
    async def verify(req: VerifyRequest):
        decision = await verifier.verify(req.rule, req.user_data)
        body = decision.to_response().model_dump(by_alias=True, exclude_none=True)
        return JSONResponse(content=body)

    @app.post("/claim")
    async def claim(req: ClaimRequest):
        if not is_address(req.receiver):
            return _error(400, "Invalid receiver address")
        try:
            tx_hash = await claims.submit_claim(
                req.drop_id,
                req.receiver,
                biometric_data=req.biometric_data,
                proof_token=req.proof_token,
            )
        except ProofError as e:
            return _error(403, str(e))
        except ConfigurationError as e:
            return _error(503, str(e))
        except SignatureError as e:
            log.warning("[CLAIM] drop=%s rejected signature: %s", req.drop_id, e)
            return _error(500, f"Invalid biometric signature: {e}")
        except ChainError as e:
            return _error(500, str(e), revertReason=e.revert_reason)
        return JSONResponse(content={"success": True, "txHash": tx_hash})

    @app.get("/check-claim/{drop_id}")
    async def check_claim(drop_id: str):
        parsed = _parse_drop_id(drop_id)
        if parsed is None:
            return _error(400, "dropId must be a non-negative integer")
        try:
            result = await status.read_status(parsed)
        except ConfigurationError as e:
            return _error(503, str(e))
        except ChainError as e:
            return _error(500, str(e))
        return JSONResponse(content=result.to_dict())

    @app.get("/check-claim/{drop_id}/gatekeeper")
    async def check_gatekeeper(drop_id: str):
        parsed = _parse_drop_id(drop_id)
        if parsed is None:
            return _error(400, "dropId must be a non-negative integer")
        try:
            return JSONResponse(content=await status.read_gatekeeper_slot(parsed))
        except ConfigurationError as e:
            return _error(503, str(e))
        except GatekeeperError as e:
            return _error(500, str(e))

    @app.post("/rules/preview")
    async def preview_rule(req: RulePreviewRequest = Body(...)):
        return JSONResponse(
            content={
                "mode": classify_quest_mode(req.rule, req.type).value,
                "display": sanitize_rule_for_display(req.rule),
                "secret": is_secret_quest(req.rule),
            }
        )

    @app.get("/health")
    async def health():
        return JSONResponse(
            content={
                "status": "ok",
                "verification": settings.verification_enabled,
                "claim": settings.claim_enabled,
                "status_reader": settings.status_enabled,
                "tracing": tracing_enabled(),
                "models": list(settings.llm_models),
            }
        )

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    settings = Settings.from_env()
    configure_tracing(settings)
    if not settings.claim_enabled:
        log.warning("[CONFIG] PRIVATE_KEY or STYLUS_CONTRACT_ADDRESS missing, claim path disabled")
    if not settings.verification_enabled:
        log.warning("[CONFIG] No OPENAI_API_KEY configured, every verification will be rejected")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
