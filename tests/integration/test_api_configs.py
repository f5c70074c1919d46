"""Integration tests for /configs routes."""
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from tablesync.models.sync import SyncConfigRecord
from tablesync.api.main import create_app
from tablesync.db.engine import get_session

BODY = {
    "id": "contacts",
    "name": "Contacts",
    "left_table": "tblMain",
    "right_table": "Sheet1",
    "field_mapping": {"fldName": 0, "fldEmail": 1},
}


@pytest.fixture(name="client")
def client_fixture(engine):
    app = create_app()

    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as c:
        yield c


class TestCreateConfig:
    def test_creates_with_defaults(self, client, engine):
        resp = client.post("/configs/", json=BODY)
        assert resp.status_code == 201
        data = resp.json()
        assert data["direction"] == "bidirectional"
        assert data["conflict_policy"] == "left_wins"
        assert data["field_mapping"] == {"fldName": 0, "fldEmail": 1}
        with Session(engine) as s:
            assert s.get(SyncConfigRecord, "contacts") is not None

    def test_accepts_direction_and_policy(self, client):
        body = dict(BODY, direction="left_to_right", conflict_policy="newest_wins")
        resp = client.post("/configs/", json=body)
        assert resp.json()["direction"] == "left_to_right"
        assert resp.json()["conflict_policy"] == "newest_wins"

    def test_rejects_unknown_direction(self, client):
        resp = client.post("/configs/", json=dict(BODY, direction="sideways"))
        assert resp.status_code == 422

    def test_duplicate_id_conflicts(self, client):
        client.post("/configs/", json=BODY)
        resp = client.post("/configs/", json=BODY)
        assert resp.status_code == 409

    def test_two_fields_same_column(self, client):
        resp = client.post("/configs/", json=dict(BODY, field_mapping={"fldName": 0, "fldEmail": 0}))
        assert resp.status_code == 422

    def test_negative_column(self, client):
        resp = client.post("/configs/", json=dict(BODY, field_mapping={"fldName": -1}))
        assert resp.status_code == 422


class TestReadConfigs:
    def test_list_empty(self, client):
        resp = client.get("/configs/")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_list_and_get(self, client):
        client.post("/configs/", json=BODY)
        client.post("/configs/", json=dict(BODY, id="accounts"))
        assert [c["id"] for c in client.get("/configs/").json()] == ["accounts", "contacts"]
        assert client.get("/configs/contacts").json()["right_table"] == "Sheet1"

    def test_get_unknown(self, client):
        resp = client.get("/configs/nope")
        assert resp.status_code == 404
