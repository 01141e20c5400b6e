from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from conftest import ETH, OWNER, STAKER
from greenfi import ledger


def _create(client, id=1, goal="1000", **extra):
    body = {"id": id, "owner": OWNER, "name": "Solar farm", "funding_goal": goal, **extra}
    resp = client.post("/api/projects", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "OK"
    assert "timestamp" in body


def test_unknown_project_is_404(client):
    resp = client.get("/api/projects/999")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Project not found"}


def test_create_project_requires_fields(client):
    resp = client.post("/api/projects", json={"id": 1, "name": "No owner"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert "owner" in resp.json()["error"]


def test_create_and_fetch_project(client):
    body = _create(client, id=3, description="rooftop panels", tx_hash="0xabc", block_number=12)
    assert body["success"] is True
    assert body["projectId"] == 3
    assert body["created"] is True

    project = client.get("/api/projects/3").json()["project"]
    assert project["owner"] == OWNER.lower()
    assert project["funds"] == "0"
    assert project["funding_goal"] == "1000"
    assert project["milestone_reached"] is False
    assert project["total_staked"] == "0"
    assert project["tx_hash"] == "0xabc"


def test_repost_does_not_rename(client):
    _create(client, id=1)
    body = _create(client, id=1, name="Other", goal="2000")
    assert body["created"] is False

    project = client.get("/api/projects/1").json()["project"]
    assert project["name"] == "Solar farm"
    assert project["funding_goal"] == "2000"


def test_stake_missing_amount_is_400(client):
    _create(client)
    resp = client.post("/api/stakes", json={"project_id": 1, "staker": STAKER})
    assert resp.status_code == 400
    assert resp.json() == {
        "success": False,
        "error": "Missing required fields: project_id, staker, amount",
    }


def test_stake_on_unknown_project_is_404(client):
    resp = client.post("/api/stakes", json={"project_id": 5, "staker": STAKER, "amount": "1"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Project not found"
    assert client.get(f"/api/stakes/user/{STAKER}").json()["stakes"] == []


def test_stake_flow_latches_milestone(client):
    _create(client, id=1, goal="1000")

    resp = client.post("/api/stakes", json={
        "project_id": 1, "staker": STAKER, "amount": "600", "tx_hash": "0x01", "block_number": 5,
    })
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    check = client.get("/api/check-milestone/1").json()
    assert check["milestone_reached"] is False
    assert check["progress"] == 60.0

    client.post("/api/stakes", json={"project_id": 1, "staker": STAKER, "amount": 400})
    check = client.get("/api/check-milestone/1").json()
    assert check["milestone_reached"] is True
    assert check["current_funds"] == "1000"
    assert check["progress"] == 100.0

    stakes = client.get("/api/stakes/project/1").json()["stakes"]
    assert sorted(s["amount"] for s in stakes) == ["400", "600"]
    assert all(s["staker"] == STAKER.lower() for s in stakes)


def test_address_lookups_ignore_case(client):
    _create(client)
    client.post("/api/stakes", json={"project_id": 1, "staker": STAKER.upper(), "amount": "7"})

    assert len(client.get(f"/api/projects/owner/{OWNER.upper()}").json()["projects"]) == 1
    assert len(client.get(f"/api/stakes/user/{STAKER}").json()["stakes"]) == 1


def test_withdrawal_endpoints(client):
    _create(client, id=2, goal=str(ETH))
    resp = client.post("/api/withdrawals", json={
        "project_id": 2, "withdrawer": OWNER, "amount": "10", "milestone": True,
    })
    assert resp.status_code == 200

    by_user = client.get(f"/api/withdrawals/user/{OWNER}").json()["withdrawals"]
    assert by_user[0]["project_name"] == "Solar farm"
    assert by_user[0]["milestone_marked"] is True
    assert len(client.get("/api/withdrawals/project/2").json()["withdrawals"]) == 1
    assert client.get("/api/projects/2").json()["project"]["milestone_reached"] is True


def test_withdrawal_validation(client):
    resp = client.post("/api/withdrawals", json={"project_id": 2, "amount": "10"})
    assert resp.status_code == 400
    resp = client.post("/api/withdrawals", json={"project_id": 2, "withdrawer": OWNER, "amount": "1"})
    assert resp.status_code == 404


def test_malformed_amount_is_400(client):
    _create(client)
    resp = client.post("/api/stakes", json={"project_id": 1, "staker": STAKER, "amount": "1e18"})
    assert resp.status_code == 400
    assert "amount" in resp.json()["error"]


def test_non_numeric_project_id_is_400(client):
    resp = client.get("/api/projects/abc")
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_stats_and_activity(client):
    _create(client)
    client.post("/api/stakes", json={"project_id": 1, "staker": STAKER, "amount": str(ETH)})

    stats = client.get("/api/stats").json()["stats"]
    assert stats["totalProjects"] == 1
    assert stats["totalFundsRaised"] == str(ETH)
    assert stats["avgInvestment"] == str(ETH)

    user = client.get(f"/api/stats/user/{STAKER}").json()["stats"]
    assert user["netContribution"] == str(ETH)

    activities = client.get("/api/activity/recent", params={"limit": 1}).json()["activities"]
    assert len(activities) == 1


def test_search(client):
    _create(client, id=1, description="rooftop panels")
    assert len(client.get("/api/projects/search/rooftop").json()["projects"]) == 1
    assert client.get("/api/projects/search/hydro").json()["projects"] == []


def test_unknown_api_path(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "API endpoint not found"}


def test_spa_shell(client):
    resp = client.get("/dashboard")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "GREENFI_CONFIG" in resp.text
    assert client.get("/static/abi.json").json()


def test_out_of_range_project_ids_are_400(client):
    resp = client.post("/api/projects", json={"id": 2 ** 64, "owner": OWNER, "name": "Too big"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resp.json()["error"].startswith("id:")

    resp = client.post("/api/stakes", json={"project_id": -1, "staker": STAKER, "amount": "1"})
    assert resp.status_code == 400

    for path in ("/api/projects/18446744073709551616", "/api/check-milestone/-1",
                 "/api/stakes/project/18446744073709551616", "/api/withdrawals/project/-3"):
        resp = client.get(path)
        assert resp.status_code == 400, path
        assert resp.json()["success"] is False


def test_largest_project_id_is_accepted(client):
    body = _create(client, id=2 ** 63 - 1)
    assert body["projectId"] == 2 ** 63 - 1
    assert client.get(f"/api/projects/{2 ** 63 - 1}").status_code == 200


def test_commit_failure_is_500(client, monkeypatch):
    def broken_commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(Session, "commit", broken_commit)

    resp = client.post("/api/projects", json={"id": 1, "owner": OWNER, "name": "Solar farm"})
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "disk I/O error" in resp.json()["error"]
    assert client.get("/api/projects/1").status_code == 404


def test_database_error_on_read_is_500(client, monkeypatch):
    def broken_list(db):
        raise OperationalError("SELECT", {}, Exception("no such table: projects"))

    monkeypatch.setattr(ledger, "list_projects", broken_list)

    resp = client.get("/api/projects")
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "no such table" in resp.json()["error"]


def test_bad_activity_limit_uses_default(client):
    _create(client)
    for i in range(3):
        client.post("/api/stakes", json={"project_id": 1, "staker": STAKER, "amount": str(i + 1)})

    for limit in ("abc", "0", "-4", ""):
        resp = client.get("/api/activity/recent", params={"limit": limit})
        assert resp.status_code == 200, limit
        assert len(resp.json()["activities"]) == 4
