"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database to verify HTTP-level behavior.
"""
from __future__ import annotations

import io

import openpyxl
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kol360.db import make_engine, seed_disease_areas
from kol360.models import Base


@pytest.fixture()
def test_db():
    """In-memory SQLite database shared by every connection via StaticPool."""
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestSession() as session:
        seed_disease_areas(session)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("KOL360_DB_PATH", str(tmp_path / "lifespan.db"))
    engine, TestSession = test_db
    from kol360.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client):
    """Client with a campaign, two HCPs, and three nominations."""
    c = client
    camp = c.post("/api/campaigns", json={
        "name": "Retina 2025", "disease_area_id": 1,
        "questions": [{"text": "National leaders?", "nomination_type": "NATIONAL_KOL"}],
    }).json()
    smith = c.post("/api/hcps", json={"npi": "1000000001", "first_name": "John", "last_name": "Smith"}).json()
    jones = c.post("/api/hcps", json={"npi": "1000000002", "first_name": "Mary", "last_name": "Jones"}).json()
    q = camp["questions"][0]["id"]
    noms = [
        c.post(f"/api/campaigns/{camp['id']}/nominations",
               json={"question_id": q, "raw_name_entered": raw}).json()
        for raw in ("John Smith", "Dr. Jones", "Somebody New")
    ]
    return c, camp, smith, jones, noms


def _xlsx(headers: list[str], rows: list[list]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(headers)
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class TestHcpEndpoints:
    def test_create_and_get(self, client):
        resp = client.post("/api/hcps", json={
            "npi": "1234567890", "first_name": "Ann", "last_name": "Lee", "state": "ny",
        })
        assert resp.status_code == 201
        hcp = resp.json()
        assert hcp["state"] == "NY"
        assert client.get(f"/api/hcps/{hcp['id']}").json()["npi"] == "1234567890"

    def test_bad_npi_is_422(self, client):
        resp = client.post("/api/hcps", json={"npi": "123", "first_name": "A", "last_name": "B"})
        assert resp.status_code == 422

    def test_duplicate_npi_is_409(self, client):
        body = {"npi": "1234567890", "first_name": "Ann", "last_name": "Lee"}
        assert client.post("/api/hcps", json=body).status_code == 201
        resp = client.post("/api/hcps", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"] == "Conflict"

    def test_missing_hcp_is_404(self, client):
        resp = client.get("/api/hcps/999")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found", "message": "HCP 999 not found", "status_code": 404}

    def test_alias_add_idempotent(self, seeded):
        c, _, smith, _, _ = seeded
        first = c.post(f"/api/hcps/{smith['id']}/aliases", json={"alias_name": "J. Smith"}).json()
        second = c.post(f"/api/hcps/{smith['id']}/aliases", json={"alias_name": "j. smith"}).json()
        assert first["created"] is True
        assert second["created"] is False
        assert len(c.get(f"/api/hcps/{smith['id']}").json()["aliases"]) == 1

    def test_search_by_alias(self, seeded):
        c, _, smith, _, _ = seeded
        c.post(f"/api/hcps/{smith['id']}/aliases", json={"alias_name": "Jack Smithers"})
        resp = c.get("/api/hcps", params={"search": "smithers"})
        assert [h["id"] for h in resp.json()["items"]] == [smith["id"]]

    def test_deactivate_hides_from_search(self, seeded):
        c, _, smith, _, _ = seeded
        assert c.delete(f"/api/hcps/{smith['id']}").json()["is_active"] is False
        ids = [h["id"] for h in c.get("/api/hcps").json()["items"]]
        assert smith["id"] not in ids
        all_ids = [h["id"] for h in c.get("/api/hcps", params={"include_inactive": True}).json()["items"]]
        assert smith["id"] in all_ids


class TestNominationEndpoints:
    def test_list_and_filter(self, seeded):
        c, camp, _, _, _ = seeded
        resp = c.get(f"/api/campaigns/{camp['id']}/nominations", params={"status": "unmatched"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 3

    def test_limit_capped(self, seeded):
        c, camp, _, _, _ = seeded
        assert c.get(f"/api/campaigns/{camp['id']}/nominations", params={"limit": 101}).status_code == 422

    def test_unknown_status_is_400(self, seeded):
        c, camp, _, _, _ = seeded
        assert c.get(f"/api/campaigns/{camp['id']}/nominations", params={"status": "DONE"}).status_code == 400

    def test_suggestions(self, seeded):
        c, _, smith, _, noms = seeded
        resp = c.get(f"/api/nominations/{noms[0]['id']}/suggestions")
        assert resp.status_code == 200
        top = resp.json()[0]
        assert top["hcp"]["id"] == smith["id"]
        assert top["score"] == 100
        assert top["match_type"] == "exact"

    def test_match_then_rematch_is_409(self, seeded):
        c, _, _, jones, noms = seeded
        resp = c.post(f"/api/nominations/{noms[1]['id']}/match", json={"hcp_id": jones["id"], "matched_by": "me"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["nomination"]["match_status"] == "MATCHED"
        assert body["alias_added"] is True
        again = c.post(f"/api/nominations/{noms[1]['id']}/match", json={"hcp_id": jones["id"]})
        assert again.status_code == 409
        assert again.json()["error"] == "Invalid State"

    def test_create_hcp_from_nomination(self, seeded):
        c, _, _, _, noms = seeded
        resp = c.post(f"/api/nominations/{noms[2]['id']}/create-hcp", json={
            "npi": "5555555555", "first_name": "Somebody", "last_name": "New",
        })
        assert resp.status_code == 201
        assert resp.json()["nomination"]["match_status"] == "NEW_HCP"

    def test_exclude_reason_too_long_is_422(self, seeded):
        c, _, _, _, noms = seeded
        resp = c.post(f"/api/nominations/{noms[2]['id']}/exclude", json={"reason": "x" * 501})
        assert resp.status_code == 422
        ok = c.post(f"/api/nominations/{noms[2]['id']}/exclude", json={"reason": "not an HCP"})
        assert ok.json()["match_status"] == "EXCLUDED"

    def test_edit_raw_name(self, seeded):
        c, _, _, _, noms = seeded
        resp = c.put(f"/api/nominations/{noms[2]['id']}/raw-name", json={"raw_name_entered": "Mary Jones"})
        assert resp.json()["raw_name_entered"] == "Mary Jones"

    def test_bulk_auto_match_and_stats(self, seeded):
        c, camp, smith, _, noms = seeded
        summary = c.post(f"/api/campaigns/{camp['id']}/nominations/bulk-auto-match").json()
        assert summary == {"matched": 1, "total": 3, "skipped_ambiguous": 0, "errors": []}
        stats = c.get(f"/api/campaigns/{camp['id']}/nominations/stats").json()
        assert stats == {"UNMATCHED": 2, "MATCHED": 1, "NEW_HCP": 0, "EXCLUDED": 0}


class TestScoringEndpoints:
    def test_config_defaults_update_and_reset(self, seeded):
        c, camp, _, _, _ = seeded
        url = f"/api/campaigns/{camp['id']}/score-config"
        assert c.get(url).json()["weight_survey"] == 25.0

        weights = c.get(url).json()
        weights.update(weight_survey=35.0, weight_clinical_trials=5.0)
        resp = c.put(url, json=weights)
        assert resp.status_code == 200
        assert resp.json()["weight_survey"] == 35.0

        weights["weight_survey"] = 50.0
        assert c.put(url, json=weights).status_code == 422

        assert c.post(f"{url}/reset").json()["weight_survey"] == 25.0

    def test_calculate_publish_and_read(self, seeded):
        c, camp, smith, jones, noms = seeded
        cid = camp["id"]
        c.post(f"/api/nominations/{noms[0]['id']}/match", json={"hcp_id": smith["id"]})
        c.post(f"/api/nominations/{noms[1]['id']}/match", json={"hcp_id": jones["id"]})
        c.put(f"/api/hcps/{smith['id']}/segment-scores/1", json={"score_clinical_trials": 80})

        assert c.post(f"/api/campaigns/{cid}/publish").status_code == 409

        result = c.post(f"/api/campaigns/{cid}/calculate").json()
        assert result["survey"]["processed"] == 2
        assert c.get(f"/api/campaigns/{cid}/calculate/status").json()["ready_to_publish"] is True
        assert c.get(f"/api/campaigns/{cid}/scores").json() == []

        published = c.post(f"/api/campaigns/{cid}/publish", json={"published_by": "analyst"}).json()
        assert published == {"processed": 2, "snapshots_created": 2}

        scores = c.get(f"/api/campaigns/{cid}/scores").json()
        assert [s["hcp_id"] for s in scores] == [smith["id"], jones["id"]]
        assert scores[0]["composite_score"] == 37.0

        board = c.get("/api/disease-areas/1/leaderboard").json()
        assert board["total"] == 2
        assert board["items"][0]["rank"] == 1
        assert board["items"][0]["hcp_id"] == smith["id"]

        history = c.get(f"/api/disease-areas/1/hcps/{smith['id']}/history").json()
        assert len(history) == 1
        assert history[0]["is_current"] is True

    def test_unknown_policy_is_400(self, seeded):
        c, camp, _, _, _ = seeded
        resp = c.post(f"/api/campaigns/{camp['id']}/calculate", params={"policy": "guess"})
        assert resp.status_code == 400

    def test_segment_score_out_of_range(self, seeded):
        c, _, smith, _, _ = seeded
        resp = c.put(f"/api/hcps/{smith['id']}/segment-scores/1", json={"score_publications": 120})
        assert resp.status_code == 422


class TestImportEndpoints:
    def test_import_hcps(self, client):
        content = _xlsx(["NPI", "First Name", "Last Name"], [["1000000007", "Li", "Wu"], ["bad", "X", "Y"]])
        resp = client.post("/api/import/hcps", files={"file": ("hcps.xlsx", content)})
        assert resp.status_code == 200
        body = resp.json()
        assert body["created"] == 1
        assert body["errors"][0]["row"] == 3

    def test_rejects_non_xlsx(self, client):
        resp = client.post("/api/import/hcps", files={"file": ("hcps.csv", b"npi\n1")})
        assert resp.status_code == 400


class TestMiscEndpoints:
    def test_disease_areas_seeded(self, client):
        codes = [d["code"] for d in client.get("/api/disease-areas").json()]
        assert codes == ["RETINA", "DRY_EYE", "GLAUCOMA", "CORNEA"]

    def test_stats(self, seeded):
        c, _, _, _, _ = seeded
        stats = c.get("/api/stats").json()
        assert stats["hcps"] == 2
        assert stats["nominations_by_status"] == {"UNMATCHED": 3}
