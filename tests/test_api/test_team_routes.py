"""
Tests for the team routes.
"""


def _create(client, api, principal: str = "alice", **fields):
    return client.post("/api/v1/teams", json=fields, headers=api.headers(principal))


class TestTeamManagement:
    """Creating, reading and deleting teams."""

    def test_create_and_read(self, client, api):
        first, second = api.agent("alice", name="first"), api.agent("alice", name="second")
        response = _create(
            client, api, name="pipeline", mode="sequential", member_agent_ids=[first["id"], second["id"]]
        )

        assert response.status_code == 201
        team = response.json()
        assert team["owner_id"] == "alice"
        assert team["failure_policy"] == "continue"

        headers = api.headers("alice")
        assert client.get(f"/api/v1/teams/{team['id']}", headers=headers).json()["id"] == team["id"]
        assert [t["id"] for t in client.get("/api/v1/teams", headers=headers).json()] == [team["id"]]

    def test_limits_are_clamped(self, client, api):
        member = api.agent("alice")
        team = _create(
            client, api, name="wide", mode="parallel", member_agent_ids=[member["id"]], max_parallel=64
        ).json()
        assert team["max_parallel"] == 4

    def test_unverified_member_cannot_join(self, client, api):
        member = api.agent("alice", verified=False)
        response = _create(client, api, name="team", mode="parallel", member_agent_ids=[member["id"]])
        assert response.status_code == 403

    def test_hierarchical_requires_leader(self, client, api):
        member = api.agent("alice")
        response = _create(client, api, name="team", mode="hierarchical", member_agent_ids=[member["id"]])
        assert response.status_code == 400

    def test_verified_agent_cannot_lead(self, client, api):
        leader, worker = api.agent("alice", name="leader"), api.agent("alice", name="worker")
        response = _create(
            client,
            api,
            name="team",
            mode="hierarchical",
            member_agent_ids=[worker["id"]],
            leader_agent_id=leader["id"],
        )
        assert response.status_code == 403

    def test_foreign_agent(self, client, api):
        member = api.agent("bob")
        response = _create(client, api, name="team", mode="parallel", member_agent_ids=[member["id"]])
        assert response.status_code == 403

    def test_other_principals_cannot_see_or_delete(self, client, api):
        member = api.agent("alice")
        team = _create(client, api, name="team", mode="parallel", member_agent_ids=[member["id"]]).json()
        bob = api.headers("bob")

        assert client.get(f"/api/v1/teams/{team['id']}", headers=bob).status_code == 403
        assert client.delete(f"/api/v1/teams/{team['id']}", headers=bob).status_code == 403
        assert client.get("/api/v1/teams/missing", headers=bob).status_code == 404

    def test_delete(self, client, api):
        member = api.agent("alice")
        team = _create(client, api, name="team", mode="parallel", member_agent_ids=[member["id"]]).json()
        headers = api.headers("alice")

        assert client.delete(f"/api/v1/teams/{team['id']}", headers=headers).status_code == 204
        assert client.get(f"/api/v1/teams/{team['id']}", headers=headers).status_code == 404


class TestTeamRuns:
    """Running teams."""

    def test_sequential_run(self, client, api):
        first, second = api.agent("alice", name="first"), api.agent("alice", name="second")
        team = _create(
            client, api, name="pipeline", mode="sequential", member_agent_ids=[first["id"], second["id"]]
        ).json()
        headers = api.headers("alice")

        response = client.post(f"/api/v1/teams/{team['id']}/run", json={"input": "relay"}, headers=headers)

        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "completed"
        assert run["output"] == "relay"
        assert [r["agent_id"] for r in run["member_results"]] == [first["id"], second["id"]]

        runs = client.get(f"/api/v1/teams/{team['id']}/runs", headers=headers).json()
        assert [r["id"] for r in runs] == [run["id"]]

    def test_hierarchical_run_with_certified_leader(self, client, api):
        leader, worker = api.agent("alice", name="leader"), api.agent("alice", name="worker")
        client.post(f"/api/v1/trust/{leader['dsid']}/certify", headers=api.headers("gov", "governance"))

        team = _create(
            client,
            api,
            name="crew",
            mode="hierarchical",
            member_agent_ids=[worker["id"]],
            leader_agent_id=leader["id"],
        ).json()
        run = client.post(
            f"/api/v1/teams/{team['id']}/run", json={"input": "survey"}, headers=api.headers("alice")
        ).json()

        roles = [r["role"] for r in run["member_results"]]
        assert roles[0] == "leader:plan"
        assert roles[-1] == "leader:synthesis"
        assert run["status"] == "completed"

    def test_only_owner_runs(self, client, api):
        member = api.agent("alice")
        team = _create(client, api, name="team", mode="parallel", member_agent_ids=[member["id"]]).json()

        response = client.post(
            f"/api/v1/teams/{team['id']}/run", json={"input": "go"}, headers=api.headers("bob")
        )
        assert response.status_code == 403
        assert client.get(f"/api/v1/teams/{team['id']}/runs", headers=api.headers("bob")).status_code == 403
