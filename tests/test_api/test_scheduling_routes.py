"""DB-backed integration tests for the scheduling API endpoints."""

import uuid

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_os.api.app import create_app
from clinic_os.api.routes.scheduling import get_store
from clinic_os.core.database import get_db
from clinic_os.core.store import SqlBookingStore


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite engine + session override
# ---------------------------------------------------------------------------

@pytest.fixture
def app(engine):
    """The app with its DB dependency bound to the test engine."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with factory() as sess:
            try:
                yield sess
                await sess.commit()
            except Exception:
                await sess.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_db] = _override_get_db
    return app


@pytest_asyncio.fixture
async def client(app):
    """AsyncClient bound to the app using the test DB."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


BASE = "/api/v1/scheduling"
PAT_ID = "pat-1"

WEEKLY_4 = {"pattern": "weekly", "end_condition": {"kind": "afterCount", "count": 4}}


def _slot(therapist_id="th-1", day="2025-03-03", at="09:00:00", track_id="pt", **kwargs):
    return {
        "track_id": track_id,
        "date": day,
        "time": at,
        "therapist_id": therapist_id,
        "duration_minutes": 45,
        **kwargs,
    }


async def _commit_series(client: AsyncClient, rule=WEEKLY_4, **slot_kwargs) -> str:
    resp = await client.post(f"{BASE}/commit", json={
        "patient_id": PAT_ID,
        "selection": {"pt": [_slot(**slot_kwargs)]},
        "recurrence_rule": rule,
    })
    assert resp.status_code == 200
    result = resp.json()["results"][0]
    assert result["outcome"] == "created"
    return result["series_id"]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "clinic-os"
        assert "X-Process-Time" in resp.headers

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        resp = await client.get("/health/live")
        assert resp.json() == {"status": "alive"}


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

class TestPreview:
    @pytest.mark.asyncio
    async def test_preview_finite(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "2025-03-03",
            "recurrence_rule": WEEKLY_4,
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["dates"] == ["2025-03-03", "2025-03-10", "2025-03-17", "2025-03-24"]
        assert data["total"] == 4
        assert data["truncated"] is False

    @pytest.mark.asyncio
    async def test_preview_monthly_clamps(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "2024-01-31",
            "recurrence_rule": {"pattern": "monthly"},
            "limit": 3,
        })
        data = resp.json()
        assert data["dates"] == ["2024-01-31", "2024-02-29", "2024-03-31"]
        assert data["total"] is None
        assert data["truncated"] is True

    @pytest.mark.asyncio
    async def test_preview_invalid_rule(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "2025-03-03",
            "recurrence_rule": {"pattern": "weekly", "end_condition": {"kind": "afterCount", "count": 0}},
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_preview_end_date_over_cap(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "2025-03-03",
            "recurrence_rule": {"pattern": "weekly", "end_condition": {"kind": "onDate", "date": "2500-01-01"}},
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_preview_at_calendar_end(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "9999-01-04",
            "recurrence_rule": {"pattern": "weekly", "end_condition": {"kind": "onDate", "date": "9999-12-31"}},
            "limit": 2,
        })
        assert resp.status_code == 200
        assert resp.json()["total"] == 52
        assert resp.json()["dates"] == ["9999-01-04", "9999-01-11"]

    @pytest.mark.asyncio
    async def test_preview_unknown_pattern(self, client):
        resp = await client.post(f"{BASE}/preview", json={
            "anchor_date": "2025-03-03",
            "recurrence_rule": {"pattern": "daily"},
        })
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_singles(self, client):
        resp = await client.post(f"{BASE}/commit", json={
            "patient_id": PAT_ID,
            "selection": {
                "pt": [_slot("th-1")],
                "ot": [_slot("th-2", track_id="ot", is_preferred=True)],
            },
        })
        assert resp.status_code == 200
        results = resp.json()["results"]
        assert [r["outcome"] for r in results] == ["created", "created"]
        assert all(r["request_kind"] == "single" for r in results)
        assert results[1]["slot_key"]["track_id"] == "ot"

    @pytest.mark.asyncio
    async def test_commit_reports_conflicts_per_slot(self, client):
        await _commit_series(client)
        resp = await client.post(f"{BASE}/commit", json={
            "patient_id": "pat-2",
            "selection": {"pt": [_slot("th-1", day="2025-03-17"), _slot("th-3")]},
        })
        results = resp.json()["results"]
        assert [r["outcome"] for r in results] == ["conflict", "created"]
        assert "th-1" in results[0]["error"]

    @pytest.mark.asyncio
    async def test_commit_empty_selection(self, client):
        resp = await client.post(f"{BASE}/commit", json={"selection": {"pt": []}})
        assert resp.status_code == 400
        assert "at least one slot" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_commit_invalid_rule(self, client):
        resp = await client.post(f"{BASE}/commit", json={
            "selection": {"pt": [_slot()]},
            "recurrence_rule": {"pattern": "weekly", "end_condition": {"kind": "onDate", "date": "2025-03-01"}},
        })
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Series lifecycle
# ---------------------------------------------------------------------------

class TestSeries:
    @pytest.mark.asyncio
    async def test_get_series(self, client):
        series_id = await _commit_series(client)
        resp = await client.get(f"{BASE}/series/{series_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["occurrences"]) == 4
        assert data["recurrence_rule"]["end_condition"] == {"kind": "afterCount", "count": 4}

    @pytest.mark.asyncio
    async def test_get_series_not_found(self, client):
        resp = await client.get(f"{BASE}/series/{uuid.uuid4()}")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_get_series_bad_id(self, client):
        resp = await client.get(f"{BASE}/series/not-a-uuid")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel_future(self, client):
        series_id = await _commit_series(client)

        remaining = await client.get(
            f"{BASE}/series/{series_id}/remaining", params={"reference_date": "2025-03-17"}
        )
        assert remaining.json()["remaining"] == 2

        resp = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "cancel_future",
            "reference_date": "2025-03-17",
            "reason": "Schedule change",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["cancelled_count"] == 2
        assert data["affected_dates"] == ["2025-03-17", "2025-03-24"]

        stored = (await client.get(f"{BASE}/series/{series_id}")).json()
        assert [o["status"] for o in stored["occurrences"]] == [
            "scheduled", "scheduled", "cancelled", "cancelled",
        ]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client):
        series_id = await _commit_series(client)
        paused = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "pause", "start_date": "2025-03-10", "end_date": "2025-03-17",
        })
        assert paused.json()["paused_count"] == 2

        resumed = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "resume", "start_date": "2025-03-01", "end_date": "2025-03-31",
        })
        assert resumed.json()["resumed_count"] == 2

    @pytest.mark.asyncio
    async def test_manage_invalid_range(self, client):
        series_id = await _commit_series(client)
        resp = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "cancel_range", "start_date": "2025-03-24", "end_date": "2025-03-03",
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_manage_missing_date(self, client):
        series_id = await _commit_series(client)
        resp = await client.post(f"{BASE}/series/{series_id}/manage", json={"action": "cancel_single"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_manage_occurrence_removed_meanwhile(self, app, client):
        series_id = await _commit_series(client)

        class _RemovedRowStore(SqlBookingStore):
            async def apply(self, result):
                raise LookupError("No occurrence for change on 2025-03-10")

        def _store(db: AsyncSession = Depends(get_db)) -> SqlBookingStore:
            return _RemovedRowStore(db)

        app.dependency_overrides[get_store] = _store
        resp = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "cancel_single", "reference_date": "2025-03-10",
        })
        assert resp.status_code == 409
        assert "2025-03-10" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_end_recurrence_then_extend(self, client):
        series_id = await _commit_series(client, rule={"pattern": "weekly"})

        resp = await client.post(f"{BASE}/series/{series_id}/manage", json={
            "action": "end_recurrence", "end_date": "2025-03-17",
        })
        assert resp.json()["end_condition"] == {"kind": "onDate", "date": "2025-03-17"}

        extended = await client.post(f"{BASE}/series/{series_id}/extend", json={"until": "2025-06-30"})
        assert extended.status_code == 200
        assert extended.json() == []

    @pytest.mark.asyncio
    async def test_extend_indefinite(self, client):
        series_id = await _commit_series(client, rule={"pattern": "biweekly"})
        resp = await client.post(f"{BASE}/series/{series_id}/extend", json={"until": "2025-04-28"})
        assert resp.status_code == 200
        assert [o["date"] for o in resp.json()] == ["2025-04-14", "2025-04-28"]

    @pytest.mark.asyncio
    async def test_extend_not_found(self, client):
        resp = await client.post(f"{BASE}/series/{uuid.uuid4()}/extend", json={"until": "2025-04-28"})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Patient-level views
# ---------------------------------------------------------------------------

class TestPatient:
    @pytest.mark.asyncio
    async def test_future_sessions_and_terminate(self, client):
        await _commit_series(client)

        summary = await client.get(
            f"{BASE}/patients/{PAT_ID}/future-sessions", params={"today": "2025-03-10"}
        )
        assert summary.status_code == 200
        rows = summary.json()
        assert len(rows) == 1
        assert rows[0]["session_count"] == 3
        assert rows[0]["next_session_date"] == "2025-03-10"

        resp = await client.post(f"{BASE}/patients/{PAT_ID}/terminate", json={
            "today": "2025-03-10", "reason": "Discharged",
        })
        data = resp.json()
        assert data["cancelled_count"] == 3
        assert data["tracks_affected"] == ["pt"]

        after = await client.get(
            f"{BASE}/patients/{PAT_ID}/future-sessions", params={"today": "2025-03-10"}
        )
        assert after.json() == []

    @pytest.mark.asyncio
    async def test_check_conflicts(self, client):
        await _commit_series(client)
        resp = await client.post(f"{BASE}/patients/{PAT_ID}/check-conflicts", json={
            "slots": [_slot("th-5", day="2025-03-10"), _slot("th-5", day="2025-03-11")],
        })
        conflicts = resp.json()
        assert len(conflicts) == 1
        assert conflicts[0]["date"] == "2025-03-10"
        assert conflicts[0]["existing_occurrence"]["therapist_id"] == "th-1"


# ---------------------------------------------------------------------------
# Retroactive
# ---------------------------------------------------------------------------

class TestRetroactive:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_date, status", [
        ("2025-03-10", "valid"),
        ("2025-03-03", "valid"),
        ("2025-03-02", "too_far_in_past"),
        ("2025-03-11", "in_future"),
    ])
    async def test_validate(self, client, session_date, status):
        resp = await client.post(f"{BASE}/retroactive/validate", json={
            "session_date": session_date, "today": "2025-03-10",
        })
        assert resp.json()["status"] == status
