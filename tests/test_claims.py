import dataclasses
import hashlib
from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from gatekeeper.chains import ChainClients
from gatekeeper.claims import ClaimSubmitter, decode_revert_reason
from gatekeeper.errors import ChainError, ConfigurationError, ProofError, SignatureError
from gatekeeper.models import BiometricData
from gatekeeper.proofs import InMemoryProofStore, ProofIssuer
from gatekeeper.signatures import recover_agent_signer

from conftest import CLAIMER, CONTRACT, RELAYER_KEY

COMPACT_SIG = [1] * 64
CLIENT_DATA = '{"type":"webauthn.get","challenge":"abc"}'


@pytest.fixture
def issuer():
    return ProofIssuer(InMemoryProofStore())


@pytest.fixture
def sent():
    return []


@pytest.fixture
def submitter(settings, issuer, sent):
    sub = ClaimSubmitter(settings, issuer)

    def fake_send(drop_id, receiver, agent_sig, bio_sig, message_hash):
        sent.append(
            {"drop_id": drop_id, "receiver": receiver, "agent": agent_sig, "bio": bio_sig, "hash": message_hash}
        )
        return "0x" + "ab" * 32

    sub._send = fake_send
    return sub


@pytest.mark.asyncio
async def test_proof_path_cosigns_and_consumes(submitter, issuer, sent):
    token = issuer.issue(address=CLAIMER)

    tx_hash = await submitter.submit_claim(7, CLAIMER, proof_token=token)

    assert tx_hash == "0x" + "ab" * 32
    agent = sent[0]["agent"]
    assert len(agent) == 65
    assert recover_agent_signer(agent, 7, CLAIMER) == Account.from_key(RELAYER_KEY).address
    assert sent[0]["bio"] == b""
    with pytest.raises(ProofError):
        issuer.check(token)


@pytest.mark.asyncio
async def test_proof_for_other_address_is_refused(submitter, issuer, sent):
    token = issuer.issue(address="0x" + "33" * 20)
    with pytest.raises(ProofError):
        await submitter.submit_claim(7, CLAIMER, proof_token=token)
    assert sent == []


@pytest.mark.asyncio
async def test_spent_proof_is_refused(submitter, issuer):
    token = issuer.issue(address=CLAIMER)
    await submitter.submit_claim(1, CLAIMER, proof_token=token)
    with pytest.raises(ProofError):
        await submitter.submit_claim(2, CLAIMER, proof_token=token)


@pytest.mark.asyncio
async def test_proof_path_ignores_assertion_without_client_data(submitter, issuer, sent):
    # the web client posts a placeholder DER signature and no clientDataJSON next to the proof
    mock_der = "0x3044" + "0220" + "00" * 31 + "01" + "0220" + "00" * 31 + "01"
    token = issuer.issue(address=CLAIMER)

    await submitter.submit_claim(7, CLAIMER, biometric_data=BiometricData(signature=mock_der), proof_token=token)

    assert len(sent[0]["agent"]) == 65
    assert sent[0]["bio"] == b""
    assert sent[0]["hash"] == b""


@pytest.mark.asyncio
async def test_biometric_only_claim_needs_client_data(submitter, sent):
    with pytest.raises(SignatureError):
        await submitter.submit_claim(3, CLAIMER, biometric_data=BiometricData(signature=COMPACT_SIG))
    assert sent == []


@pytest.mark.asyncio
async def test_biometric_path(submitter, sent):
    bio = BiometricData(signature=COMPACT_SIG, clientDataJSON=CLIENT_DATA)

    await submitter.submit_claim(3, CLAIMER, biometric_data=bio)

    assert sent[0]["agent"] == b""
    assert sent[0]["bio"] == bytes(COMPACT_SIG)
    assert sent[0]["hash"] == hashlib.sha256(CLIENT_DATA.encode()).digest()


@pytest.mark.asyncio
async def test_claim_without_any_authorization(submitter, sent):
    with pytest.raises(SignatureError):
        await submitter.submit_claim(3, CLAIMER)
    assert sent == []


@pytest.mark.asyncio
async def test_malformed_biometric_signature(submitter):
    bio = BiometricData(signature=[0x30, 0x05, 0x02, 0x01], clientDataJSON=CLIENT_DATA)
    with pytest.raises(SignatureError):
        await submitter.submit_claim(3, CLAIMER, biometric_data=bio)


@pytest.mark.asyncio
async def test_failed_send_keeps_proof(settings, issuer):
    sub = ClaimSubmitter(settings, issuer)

    def failing_send(*args):
        raise ChainError("Claim reverted: E3: drop has expired", revert_reason="E3: drop has expired")

    sub._send = failing_send
    token = issuer.issue(address=CLAIMER)
    with pytest.raises(ChainError):
        await sub.submit_claim(3, CLAIMER, proof_token=token)
    assert issuer.check(token).valid is True


@pytest.mark.asyncio
async def test_disabled_without_relayer_key(settings, issuer):
    sub = ClaimSubmitter(dataclasses.replace(settings, relayer_private_key=""), issuer)
    with pytest.raises(ConfigurationError):
        await sub.submit_claim(1, CLAIMER, proof_token="anything")


class FakeCall:
    def __init__(self, estimate_error=None):
        self.estimate_error = estimate_error
        self.built = None

    def estimate_gas(self, params):
        if self.estimate_error:
            raise self.estimate_error
        return 100_000

    def build_transaction(self, params):
        self.built = params
        tx = {k: v for k, v in params.items() if k != "from"}
        tx.update({"to": Web3.to_checksum_address(CONTRACT), "data": "0x", "value": 0})
        return tx


def fake_chain(call, status=1):
    sent_raw = []
    eth = SimpleNamespace(
        contract=lambda address, abi: SimpleNamespace(functions=SimpleNamespace(claimDrop=lambda *args: call)),
        get_transaction_count=lambda address, block: 4,
        gas_price=10**8,
        chain_id=421614,
        send_raw_transaction=lambda raw: sent_raw.append(raw) or b"\xcd" * 32,
        wait_for_transaction_receipt=lambda tx_hash, timeout: {"status": status},
    )
    return SimpleNamespace(eth=eth, to_wei=Web3.to_wei), sent_raw


def submitter_on(settings, w3):
    clients = ChainClients(settings)
    clients.set(settings.claim_chain, w3)
    return ClaimSubmitter(settings, ProofIssuer(InMemoryProofStore()), clients)


def test_send_builds_eip1559_transaction(settings):
    call = FakeCall()
    w3, sent_raw = fake_chain(call)

    tx_hash = submitter_on(settings, w3)._send(1, CLAIMER, b"\x01" * 65, b"", b"")

    assert tx_hash == "0x" + "cd" * 32
    assert call.built["nonce"] == 4
    assert call.built["gas"] == 120_000
    assert call.built["maxPriorityFeePerGas"] == 2 * 10**9
    assert call.built["maxFeePerGas"] == 10**8 + 2 * 10**9
    assert call.built["chainId"] == 421614
    assert len(sent_raw) == 1


def test_send_maps_vault_revert(settings):
    w3, _ = fake_chain(FakeCall(ContractLogicError("execution reverted: E2")))

    with pytest.raises(ChainError) as exc:
        submitter_on(settings, w3)._send(1, CLAIMER, b"", b"", b"")

    assert exc.value.revert_reason == "E2: drop is not active"


def test_send_rejects_failed_receipt(settings):
    w3, _ = fake_chain(FakeCall(), status=0)
    with pytest.raises(ChainError):
        submitter_on(settings, w3)._send(1, CLAIMER, b"", b"", b"")


def test_decode_revert_reason():
    assert decode_revert_reason(ValueError("execution reverted: E15")) == "E15: biometric signature missing or not 64 bytes"
    assert decode_revert_reason(ValueError("execution reverted: E99")) == "E99: unknown vault error"
    assert decode_revert_reason(ValueError("execution reverted: out of gas")) == "out of gas"
