"""HTTP-level tests: status codes, error bodies and the end-to-end proof flow."""

import base64

import httpx
import pytest

from conftest import ALICE_ADDRESS, ALICE_DID, BOB_ADDRESS, BOB_DID, ISSUER_DID, VERIFIER_DID
from core.wallet import encryption_challenge
from main import app

pytestmark = pytest.mark.api


async def _signature(signer, address, wallet_type) -> str:
    raw = await signer.sign_arbitrary("cosmoshub-4", address, encryption_challenge(wallet_type, address))
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture
async def client(services):
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
async def alice(alice_signer):
    return {
        "wallet_address": ALICE_ADDRESS,
        "wallet_type": "keplr",
        "signature": await _signature(alice_signer, ALICE_ADDRESS, "keplr"),
    }


class TestStatus:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    async def test_health_check(self, client):
        body = (await client.get("/health-check")).json()
        assert body["database"] == "ok"
        assert body["crypto"] == "ok"

    async def test_ledger_status(self, client):
        body = (await client.get("/ledger/status")).json()
        assert body["accessible"] is True


class TestIdentityRoutes:
    async def test_challenge(self, client):
        response = await client.get(
            "/identity/challenge", params={"wallet_address": ALICE_ADDRESS, "wallet_type": "keplr"}
        )
        assert response.json()["message"] == encryption_challenge("keplr", ALICE_ADDRESS)

    async def test_create_then_conflict(self, client, alice):
        created = await client.post("/identity/dids", json=alice)
        assert created.status_code == 201
        assert created.json()["did"] == ALICE_DID
        assert created.json()["anchor"]["anchored"] is True

        again = await client.post("/identity/dids", json=alice)
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "conflict"

    async def test_public_resolution(self, client, alice_did):
        response = await client.get(f"/identity/dids/{alice_did}")
        assert response.status_code == 200
        body = response.json()
        assert body["didDocument"]["id"] == alice_did
        assert body["didDocument"]["verificationMethod"] == []

    async def test_resolution_errors(self, client):
        missing = await client.get("/identity/dids/did:persona:aaaaaaaaaaaa")
        invalid = await client.get("/identity/dids/did:persona:NOTVALID")
        assert missing.status_code == 404
        assert missing.json()["didResolutionMetadata"]["error"] == "notFound"
        assert missing.json()["didDocument"] is None
        assert invalid.status_code == 400

    async def test_private_resolution_needs_owner(self, client, alice_did, alice, bob_signer):
        own = await client.post(f"/identity/dids/{alice_did}/resolve", json=alice)
        assert own.status_code == 200
        assert own.json()["didDocument"]["authentication"] == [f"{alice_did}#keys-1"]

        forged = {**alice, "signature": await _signature(bob_signer, ALICE_ADDRESS, "keplr")}
        denied = await client.post(f"/identity/dids/{alice_did}/resolve", json=forged)
        assert denied.status_code == 403

    async def test_malformed_signature(self, client, alice_did, alice):
        response = await client.post(f"/identity/dids/{alice_did}/resolve", json={**alice, "signature": "%%%"})
        assert response.status_code == 400

    async def test_update_and_deactivate(self, client, alice_did, alice):
        updated = await client.patch(
            f"/identity/dids/{alice_did}",
            json={**alice, "updates": {"service": [
                {"id": f"{alice_did}#hub", "type": "IdentityHub", "serviceEndpoint": "https://hub.test"},
            ]}},
        )
        assert updated.status_code == 200
        assert updated.json()["version"] == 2

        deactivated = await client.post(f"/identity/dids/{alice_did}/deactivate", json=alice)
        assert deactivated.status_code == 200
        assert deactivated.json()["document"]["authentication"] == []

        history = (await client.get(f"/ledger/anchors/{alice_did}")).json()["anchors"]
        assert [a["operation"] for a in history] == ["create", "update", "deactivate"]

    async def test_reverse_lookup(self, client, alice_did):
        found = await client.get(f"/identity/wallets/{ALICE_ADDRESS}/did")
        missing = await client.get(f"/identity/wallets/{BOB_ADDRESS}/did")
        assert found.json()["did"] == alice_did
        assert missing.status_code == 404


class TestProofFlow:
    async def test_issue_prove_verify(self, client, alice_did, alice):
        issued = await client.post("/credentials", json={
            **alice,
            "issuer_did": ISSUER_DID,
            "subject_did": alice_did,
            "credential_type": "IdentityCredential",
            "claims": {"firstName": "Jane", "lastName": "Doe", "verified": True},
        })
        assert issued.status_code == 201
        credential_id = issued.json()["credential"]["id"]

        request = (await client.post("/proofs/requests", json={
            "verifier_did": VERIFIER_DID, "requested_attributes": ["verified"], "purpose": "kyc",
        })).json()

        generated = await client.post("/proofs/selective-disclosure", json={
            **alice,
            "credential_id": credential_id,
            "requested_attributes": ["verified"],
            "purpose": "kyc",
            "verifier_did": VERIFIER_DID,
            "challenge": request["challenge"],
        })
        assert generated.status_code == 201
        proof = generated.json()["proof"]
        assert "Jane" not in generated.text

        verification = {"proof": proof, "verifierDid": VERIFIER_DID, "challengeToken": request["challengeToken"]}
        first = await client.post("/proofs/verify", json=verification)
        second = await client.post("/proofs/verify", json=verification)
        assert first.status_code == 200
        assert first.json()["isValid"] is True
        assert first.json()["verifiedAttributes"] == {"verified": True}
        assert second.status_code == 200
        assert second.json()["isValid"] is False
        assert second.json()["error"] == "replayDetected"

    async def test_generation_errors_map_to_status(self, client, alice, identity_credential):
        response = await client.post("/proofs/selective-disclosure", json={
            **alice,
            "credential_id": identity_credential.id,
            "requested_attributes": ["email"],
            "purpose": "kyc",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == {
            "error": "invalid_request",
            "message": "A requested attribute is not part of the credential.",
        }

    async def test_unknown_credential(self, client, alice_did, alice):
        response = await client.post("/credentials/urn:uuid:missing/revoke", json={**alice, "issuer_did": alice_did})
        assert response.status_code == 404

    async def test_revoke_needs_wallet(self, client, identity_credential):
        response = await client.post(f"/credentials/{identity_credential.id}/revoke", json={"issuer_did": BOB_DID})
        assert response.status_code == 422

    async def test_revoke_from_foreign_wallet(self, client, identity_credential, alice):
        response = await client.post(
            f"/credentials/{identity_credential.id}/revoke", json={**alice, "issuer_did": BOB_DID}
        )
        assert response.status_code == 403

    async def test_revoke_as_issuer(self, client, identity_credential, bob_signer):
        response = await client.post(f"/credentials/{identity_credential.id}/revoke", json={
            "wallet_address": BOB_ADDRESS,
            "wallet_type": "leap",
            "signature": await _signature(bob_signer, BOB_ADDRESS, "leap"),
            "issuer_did": BOB_DID,
            "reason": "superseded",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "revoked"

    async def test_invalid_verifier_in_request(self, client):
        response = await client.post("/proofs/requests", json={
            "verifier_did": "verifier", "requested_attributes": ["age"], "purpose": "kyc",
        })
        assert response.status_code == 400
