import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.services.council_errors import ConfigError
from conftest import CHAIRMAN, MEMBER_A, MEMBER_B, MEMBER_C, answer_body, review_body, synthesis_body


@pytest.fixture
def client(settings, fake_council, fake_redis):
    app = create_app(
        settings_loader=lambda: settings,
        transport=fake_council.transport(),
        redis_client=fake_redis,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def scripted(fake_council):
    fake_council.answers[MEMBER_A] = answer_body("member-a", "a")
    fake_council.answers[MEMBER_B] = answer_body("member-b", "b")
    fake_council.answers[MEMBER_C] = answer_body("member-c", "c")
    fake_council.reviews[MEMBER_A] = review_body("member-a", ["B", "C"])
    fake_council.reviews[MEMBER_B] = review_body("member-b", ["A", "C"])
    fake_council.reviews[MEMBER_C] = review_body("member-c", ["A", "B"])
    fake_council.synthesis = synthesis_body()
    return fake_council


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert [m["member_url"] for m in data["members"]] == [MEMBER_A, MEMBER_B, MEMBER_C]
    assert data["chairman"]["chairman_url"] == CHAIRMAN
    assert data["heartbeat"]["interval_ms"] == 60000


def test_heartbeat_endpoint(client):
    response = client.get("/heartbeat")
    assert response.status_code == 200
    data = response.json()
    assert set(data["members"]) == {MEMBER_A, MEMBER_B, MEMBER_C}
    assert data["chairman"]["url"] == CHAIRMAN


def test_full_pipeline_over_http(client, scripted):
    stage1 = client.post("/stage1", json={"query": "  What is entropy?  ", "options": {"temperature": 0.5}})
    assert stage1.status_code == 200
    body = stage1.json()
    request_id = body["request_id"]
    assert body["query"] == "  What is entropy?  "
    assert [a["anon_id"] for a in body["answers"]] == ["A", "B", "C"]

    stage2 = client.post("/stage2", json={"request_id": request_id})
    assert stage2.status_code == 200
    assert stage2.json()["aggregated_ranking"][0] == {"anon_id": "A", "score": 4}

    stage3 = client.post("/stage3", json={"request_id": request_id})
    assert stage3.status_code == 200
    assert stage3.json()["status"] == "ok"
    assert stage3.json()["final_answer"] == "The council agrees."

    run = client.get(f"/runs/{request_id}")
    assert run.status_code == 200
    assert run.json()["status"] == "stage3_done"

    alias = client.get(f"/request/{request_id}")
    assert alias.json() == run.json()


def test_stage1_rejects_missing_query(client, fake_council):
    response = client.post("/stage1", json={})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"
    assert fake_council.calls_to("/answer") == []


def test_stage1_rejects_blank_query(client, fake_council):
    response = client.post("/stage1", json={"query": "   "})
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_REQUEST"
    assert fake_council.calls_to("/answer") == []


def test_stage1_keeps_query_text_as_sent(client, scripted):
    request_id = client.post("/stage1", json={"query": "\tWhy?\n"}).json()["request_id"]

    run = client.get(f"/runs/{request_id}").json()

    assert run["query"] == "\tWhy?\n"
    assert {body["query"] for _, _, body in scripted.calls_to("/answer")} == {"\tWhy?\n"}


def test_stage1_drops_unknown_option_keys(client, scripted):
    response = client.post("/stage1", json={"query": "q", "options": {"temperature": 0.2, "top_k": 5}})

    assert response.status_code == 200
    bodies = [body for _, _, body in scripted.calls_to("/answer")]
    assert all(body["options"] == {"temperature": 0.2} for body in bodies)


def test_stage1_rejects_bad_temperature(client):
    response = client.post("/stage1", json={"query": "q", "options": {"temperature": "hot"}})
    assert response.status_code == 400


def test_stage2_unknown_request(client):
    response = client.post("/stage2", json={"request_id": "missing"})
    assert response.status_code == 404
    assert response.json()["error"] == "Request not found"


def test_stage2_requires_request_id(client):
    response = client.post("/stage2", json={})
    assert response.status_code == 400


def test_stage2_with_one_answer(client, fake_council):
    fake_council.answers[MEMBER_A] = answer_body("member-a", "a")
    request_id = client.post("/stage1", json={"query": "q"}).json()["request_id"]

    response = client.post("/stage2", json={"request_id": request_id})

    assert response.status_code == 400
    assert response.json()["error"] == "Not enough answers to run stage2"


def test_stage3_before_stage2(client, scripted):
    request_id = client.post("/stage1", json={"query": "q"}).json()["request_id"]

    response = client.post("/stage3", json={"request_id": request_id})

    assert response.status_code == 400
    assert response.json()["error_code"] == "MISSING_RANKING"


def test_stage3_chairman_failure_is_200(client, scripted):
    scripted.synthesis = 500
    request_id = client.post("/stage1", json={"query": "q"}).json()["request_id"]
    client.post("/stage2", json={"request_id": request_id})

    response = client.post("/stage3", json={"request_id": request_id})

    assert response.status_code == 200
    assert response.json()["status"] == "error"


def test_runs_list_get_delete(client, scripted, fake_redis):
    request_id = client.post("/stage1", json={"query": "q"}).json()["request_id"]

    listed = client.get("/runs", params={"limit": 5})
    assert listed.status_code == 200
    assert [run["request_id"] for run in listed.json()["runs"]] == [request_id]

    deleted = client.delete(f"/runs/{request_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"ok": True}

    assert client.get(f"/runs/{request_id}").status_code == 404
    assert client.get("/runs").json() == {"runs": []}
    assert fake_redis.hashes == {}


def test_run_survives_restart(settings, fake_council, fake_redis, scripted):
    def build():
        return create_app(
            settings_loader=lambda: settings,
            transport=fake_council.transport(),
            redis_client=fake_redis,
        )

    with TestClient(build()) as first:
        request_id = first.post("/stage1", json={"query": "q"}).json()["request_id"]

    with TestClient(build()) as second:
        response = second.get(f"/runs/{request_id}")

    assert response.status_code == 200
    assert response.json()["status"] == "stage1_done"


def test_get_unknown_run(client):
    response = client.get("/runs/missing")
    assert response.status_code == 404
    assert response.json()["error_code"] == "RUN_NOT_FOUND"


def test_startup_fails_on_bad_config(fake_council):
    def bad_settings():
        raise ConfigError("COUNCIL_MEMBERS is required and must include at least one URL.")

    app = create_app(settings_loader=bad_settings, transport=fake_council.transport())

    with pytest.raises(ConfigError):
        with TestClient(app):
            pass


def test_cors_allows_any_localhost_port(client):
    response = client.options(
        "/stage1",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
