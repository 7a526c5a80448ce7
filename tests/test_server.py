import pytest
from fastapi.testclient import TestClient

from gatekeeper.errors import ChainError, ConfigurationError, ProofError, SignatureError
from gatekeeper.models import ClaimStatus, VerificationDecision
from gatekeeper.server import create_app

from conftest import CLAIMER


class StubVerifier:
    def __init__(self, decision):
        self.decision = decision
        self.seen = []
        self.proofs = None

    async def verify(self, rule, user_context):
        self.seen.append((rule, user_context))
        return self.decision


class StubClaims:
    def __init__(self, error=None):
        self.error = error
        self.seen = []

    async def submit_claim(self, drop_id, receiver, biometric_data=None, proof_token=None):
        self.seen.append((drop_id, receiver, biometric_data, proof_token))
        if self.error:
            raise self.error
        return "0x" + "ab" * 32


class StubStatus:
    def __init__(self, error=None):
        self.error = error
        self.seen = []

    async def read_status(self, drop_id):
        self.seen.append(drop_id)
        if self.error:
            raise self.error
        return ClaimStatus(active=True, claimed=False, reclaimed=False, claimed_by=None, details={"amount": "1"})

    async def read_gatekeeper_slot(self, drop_id):
        return {"dropId": drop_id, "matchesRelayer": True}


def client_for(settings, decision=None, claims=None, status=None):
    verifier = StubVerifier(decision or VerificationDecision(approved=True, explanation="ok", proof_token="tok"))
    app = create_app(settings, verifier=verifier, claims=claims or StubClaims(), status=status or StubStatus())
    return TestClient(app), verifier


def test_verify_approved(settings):
    client, verifier = client_for(settings)

    resp = client.post(
        "/verify",
        json={"rule": "Hold 1 ETH", "user_data": {"address": CLAIMER, "discordId": 123456789012345678}},
    )

    assert resp.status_code == 200
    assert resp.json() == {"approved": True, "explanation": "ok", "proofToken": "tok"}
    rule, ctx = verifier.seen[0]
    assert rule == "Hold 1 ETH"
    assert ctx.discord_id == "123456789012345678"


def test_verify_rejected_has_no_token(settings):
    decision = VerificationDecision(approved=False, explanation="no", proof_token="leaked")
    client, _ = client_for(settings, decision=decision)

    resp = client.post("/verify", json={"rule": "Hold 1 ETH", "user_data": {"address": CLAIMER}})

    assert resp.json() == {"approved": False, "explanation": "no"}


def test_verify_requires_rule(settings):
    client, _ = client_for(settings)
    resp = client.post("/verify", json={"user_data": {"address": CLAIMER}})
    assert resp.status_code == 422


def test_claim_success(settings):
    claims = StubClaims()
    client, _ = client_for(settings, claims=claims)

    resp = client.post("/claim", json={"dropId": "0x0a", "receiver": CLAIMER, "proofToken": "tok"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "txHash": "0x" + "ab" * 32}
    assert claims.seen[0] == (10, CLAIMER, None, "tok")


def test_claim_rejects_bad_receiver(settings):
    claims = StubClaims()
    client, _ = client_for(settings, claims=claims)
    resp = client.post("/claim", json={"dropId": 1, "receiver": "0xnope"})
    assert resp.status_code == 400
    assert claims.seen == []


@pytest.mark.parametrize(
    "error,status_code",
    [
        (ProofError("proof token expired"), 403),
        (ConfigurationError("Claim path disabled"), 503),
        (SignatureError("malformed DER signature"), 500),
    ],
)
def test_claim_error_mapping(settings, error, status_code):
    client, _ = client_for(settings, claims=StubClaims(error))
    resp = client.post("/claim", json={"dropId": 1, "receiver": CLAIMER})
    assert resp.status_code == status_code
    assert "error" in resp.json()


def test_claim_revert_reason_is_surfaced(settings):
    error = ChainError("Claim reverted: E2: drop is not active", revert_reason="E2: drop is not active")
    client, _ = client_for(settings, claims=StubClaims(error))

    resp = client.post("/claim", json={"dropId": 1, "receiver": CLAIMER})

    assert resp.status_code == 500
    assert resp.json()["revertReason"] == "E2: drop is not active"


def test_check_claim(settings):
    status = StubStatus()
    client, _ = client_for(settings, status=status)

    resp = client.get("/check-claim/0x05")

    assert resp.status_code == 200
    assert resp.json()["active"] is True
    assert resp.json()["claimedBy"] is None
    assert status.seen == [5]


@pytest.mark.parametrize("drop_id", ["abc", "-1"])
def test_check_claim_bad_id(settings, drop_id):
    client, _ = client_for(settings)
    assert client.get(f"/check-claim/{drop_id}").status_code == 400


def test_check_claim_rpc_failure(settings):
    client, _ = client_for(settings, status=StubStatus(ChainError("drops(1) call failed")))
    resp = client.get("/check-claim/1")
    assert resp.status_code == 500


def test_gatekeeper_diagnostic(settings):
    client, _ = client_for(settings)
    resp = client.get("/check-claim/3/gatekeeper")
    assert resp.json() == {"dropId": 3, "matchesRelayer": True}


def test_rule_preview_hides_secret(settings):
    client, _ = client_for(settings)

    resp = client.post("/rules/preview", json={"rule": "Say the secret password: STYLUS2026"})

    assert resp.json() == {"mode": "TRIVIA", "display": "Say the secret password: [HIDDEN]", "secret": True}


def test_health(settings):
    client, _ = client_for(settings)
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["verification"] is True
    assert body["claim"] is True
    assert body["models"] == ["model-a", "model-b"]
