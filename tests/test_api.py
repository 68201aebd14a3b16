# tests/test_api.py
from fastapi.testclient import TestClient

from conftest import AGENT, job_payload, seed_catalog


def _claim(client: TestClient, job_id: str):
    return client.post(f"/jobs/{job_id}/claim", json=AGENT.model_dump())


def _change(client: TestClient, job_id: str, expected: str, new: str, message: str = "msg"):
    return client.put(
        f"/jobs/{job_id}/status",
        json={"expected_status": expected, "new_status": new, "message": message},
    )


def test_healthz(client: TestClient):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_submit_get_list_job(client: TestClient):
    seed_catalog(client)

    r = client.post("/jobs", json=job_payload("job-api-1", "pass"))
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["id"] == "job-api-1"
    assert body["status"] is None
    assert body["user"] == "alice"

    r = client.get("/jobs/job-api-1")
    assert r.status_code == 200, r.text
    assert r.json()["name"] == "job job-api-1"

    r = client.get("/jobs")
    assert r.status_code == 200
    j = r.json()
    assert j["total"] == 1
    assert [job["id"] for job in j["jobs"]] == ["job-api-1"]

    r = client.get("/jobs/job-api-1/specification")
    assert r.status_code == 200
    assert r.json()["command_args"] == ["pass"]


def test_get_unknown_job_returns_404(client: TestClient):
    r = client.get("/jobs/nope")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_submit_duplicate_id_returns_409(client: TestClient):
    seed_catalog(client)
    payload = job_payload("job-dupe", "pass")

    assert client.post("/jobs", json=payload).status_code == 201
    r2 = client.post("/jobs", json=payload)
    assert r2.status_code == 409, r2.text
    assert r2.json()["code"] == "CONFLICT"


def test_submit_with_unknown_resources_is_invalid_and_cannot_be_claimed(client: TestClient):
    r = client.post("/jobs", json=job_payload("job-invalid", "pass"))
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "INVALID"
    assert "command:python" in body["status_message"]
    assert body["finished_at"] is not None

    r = _claim(client, "job-invalid")
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_CLAIMED"
    assert r.json()["details"]["status"] == "INVALID"


def test_claim_sets_claimed_once(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-claim", "pass"))

    r = _claim(client, "job-claim")
    assert r.status_code == 200, r.text
    assert r.json()["id"] == "job-claim"

    job = client.get("/jobs/job-claim").json()
    assert job["status"] == "CLAIMED"
    assert job["agent_hostname"] == "test-host"
    assert job["agent_pid"] == 4242
    assert job["claimed_at"] is not None

    r = _claim(client, "job-claim")
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_CLAIMED"

    assert _claim(client, "missing").status_code == 404


def test_change_status_is_compare_and_set(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-cas", "pass"))
    _claim(client, "job-cas")

    r = _change(client, "job-cas", "CLAIMED", "INIT", "agent configured")
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "INIT"
    assert r.json()["status_message"] == "agent configured"

    # Second writer still believes the job is CLAIMED
    r = _change(client, "job-cas", "CLAIMED", "INIT")
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "STALE_STATUS"
    assert body["details"]["current"] == "INIT"
    assert body["details"]["expected"] == "CLAIMED"


def test_change_status_rejects_illegal_transition(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-illegal", "pass"))
    _claim(client, "job-illegal")

    r = _change(client, "job-illegal", "CLAIMED", "RUNNING")
    assert r.status_code == 400
    assert r.json()["code"] == "ILLEGAL_TRANSITION"
    assert client.get("/jobs/job-illegal").json()["status"] == "CLAIMED"


def test_terminal_status_sets_finished_at_and_blocks_changes(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-term", "pass"))
    _claim(client, "job-term")
    assert _change(client, "job-term", "CLAIMED", "KILLED", "job killed by user").status_code == 200

    job = client.get("/jobs/job-term").json()
    assert job["status"] == "KILLED"
    assert job["finished_at"] is not None

    r = _change(client, "job-term", "KILLED", "FAILED")
    assert r.status_code == 400
    assert r.json()["code"] == "ILLEGAL_TRANSITION"


def test_status_history_is_in_commit_order(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-hist", "pass"))
    _claim(client, "job-hist")
    _change(client, "job-hist", "CLAIMED", "INIT")
    _change(client, "job-hist", "INIT", "RESOLVED")
    _change(client, "job-hist", "CLAIMED", "INIT")  # stale, not recorded

    r = client.get("/jobs/job-hist/status-history")
    assert r.status_code == 200
    history = [(h["from_status"], h["to_status"]) for h in r.json()]
    assert history == [(None, "CLAIMED"), ("CLAIMED", "INIT"), ("INIT", "RESOLVED")]

    assert client.get("/jobs/missing/status-history").status_code == 404


def test_list_jobs_filters_by_status(client: TestClient):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-a", "pass"))
    client.post("/jobs", json=job_payload("job-b", "pass"))
    _claim(client, "job-b")

    r = client.get("/jobs", params={"status": "CLAIMED"})
    assert r.status_code == 200
    assert [j["id"] for j in r.json()["jobs"]] == ["job-b"]


def test_resource_catalog_create_and_get(client: TestClient):
    seed_catalog(client)

    r = client.get("/commands/python")
    assert r.status_code == 200
    assert r.json()["executable"][-1] == "-c"

    assert client.get("/clusters/local").json()["environment"]["FROM_CLUSTER"] == "cluster"
    assert client.get("/applications/tools").status_code == 200
    assert client.get("/applications/nope").status_code == 404

    r = client.post("/clusters", json={"id": "local", "name": "again"})
    assert r.status_code == 409
    assert r.json()["code"] == "CONFLICT"


def test_submit_rejects_malformed_job(client: TestClient):
    payload = job_payload("job-bad", "pass", application_ids=["tools", "tools"])
    r = client.post("/jobs", json=payload)
    assert r.status_code == 422
