"""
Tests for the identity routes.
"""

from agentos.security.integrity import generate_keypair, sign_message


class TestRegistration:
    """Registering and resolving DSIDs."""

    def test_register_generates_keypair(self, client, api):
        response = client.post(
            "/api/v1/identity/register",
            json={"agent_name": "scout", "metadata": {"team": "research"}},
            headers=api.headers("alice"),
        )

        assert response.status_code == 201
        result = response.json()
        assert result["private_key"]
        assert result["document"]["dsid"].startswith("dsid:agentos:")
        assert result["document"]["owner_id"] == "alice"
        assert result["document"]["verified"] is False

    def test_register_with_own_key(self, client, api):
        _, public_key = generate_keypair()
        response = client.post(
            "/api/v1/identity/register",
            json={"agent_name": "scout", "public_key": public_key},
            headers=api.headers("alice"),
        )

        assert response.status_code == 201
        assert response.json()["private_key"] is None
        assert response.json()["document"]["public_key"] == public_key

    def test_invalid_key(self, client, api):
        response = client.post(
            "/api/v1/identity/register",
            json={"agent_name": "scout", "public_key": "bm90LWEta2V5"},
            headers=api.headers("alice"),
        )
        assert response.status_code == 400

    def test_resolve_and_list(self, client, api):
        document = api.identity("alice", verified=False)

        resolved = client.get(f"/api/v1/identity/{document['dsid']}")
        assert resolved.status_code == 200
        assert resolved.json()["dsid"] == document["dsid"]

        mine = client.get("/api/v1/identity", headers=api.headers("alice")).json()
        assert [d["dsid"] for d in mine] == [document["dsid"]]
        assert client.get("/api/v1/identity", headers=api.headers("bob")).json() == []

    def test_unknown_dsid(self, client, api):
        assert client.get("/api/v1/identity/dsid:agentos:missing").status_code == 404
        response = client.post(
            "/api/v1/identity/dsid:agentos:missing/challenge", headers=api.headers("alice")
        )
        assert response.status_code == 404


class TestVerification:
    """Challenge-response key proof."""

    def test_verify(self, api):
        document = api.identity("alice", verified=True)
        assert document["verified"] is True

    def test_wrong_signature(self, client, api):
        headers = api.headers("alice")
        document = api.identity("alice", verified=False)
        other_private, _ = generate_keypair()
        challenge = client.post(
            f"/api/v1/identity/{document['dsid']}/challenge", headers=headers
        ).json()

        response = client.post(
            f"/api/v1/identity/{document['dsid']}/verify",
            json={"signature": sign_message(challenge["nonce"], other_private)},
            headers=headers,
        )
        assert response.status_code == 400

    def test_stranger_cannot_disturb_pending_challenge(self, client, api):
        headers = api.headers("alice")
        stranger = api.headers("mallory")
        response = client.post(
            "/api/v1/identity/register", json={"agent_name": "scout"}, headers=headers
        )
        result = response.json()
        dsid = result["document"]["dsid"]
        challenge = client.post(f"/api/v1/identity/{dsid}/challenge", headers=headers).json()

        assert client.post(f"/api/v1/identity/{dsid}/challenge", headers=stranger).status_code == 403
        response = client.post(
            f"/api/v1/identity/{dsid}/verify", json={"signature": "c2lnbmF0dXJl"}, headers=stranger
        )
        assert response.status_code == 403

        response = client.post(
            f"/api/v1/identity/{dsid}/verify",
            json={"signature": sign_message(challenge["nonce"], result["private_key"])},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["verified"] is True


class TestLifecycle:
    """Rotation, suspension and revocation."""

    def test_rotate(self, client, api):
        headers = api.headers("alice")
        response = client.post(
            "/api/v1/identity/register", json={"agent_name": "scout"}, headers=headers
        ).json()
        dsid, old_private = response["document"]["dsid"], response["private_key"]
        _, new_public = generate_keypair()

        rotated = client.post(
            f"/api/v1/identity/{dsid}/rotate",
            json={"new_public_key": new_public, "proof_signature": sign_message(new_public, old_private)},
            headers=headers,
        )

        assert rotated.status_code == 200
        assert rotated.json()["dsid"] == dsid
        assert rotated.json()["public_key"] == new_public

    def test_suspend_reinstate_revoke(self, client, api):
        headers = api.headers("alice")
        dsid = api.identity("alice")["dsid"]

        suspended = client.post(f"/api/v1/identity/{dsid}/suspend", json={"reason": "audit"}, headers=headers)
        assert suspended.json()["status"] == "suspended"

        reinstated = client.post(f"/api/v1/identity/{dsid}/reinstate", headers=headers)
        assert reinstated.json()["status"] == "active"

        revoked = client.post(f"/api/v1/identity/{dsid}/revoke", json={"reason": "retired"}, headers=headers)
        assert revoked.json()["status"] == "revoked"

        again = client.post(f"/api/v1/identity/{dsid}/reinstate", headers=headers)
        assert again.status_code == 400

    def test_only_owner_manages(self, client, api):
        dsid = api.identity("alice")["dsid"]
        response = client.post(
            f"/api/v1/identity/{dsid}/suspend", json={"reason": "mine now"}, headers=api.headers("mallory")
        )
        assert response.status_code == 403
