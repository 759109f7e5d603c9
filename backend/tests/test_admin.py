import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from agenda.database import get_db
from agenda.dependencies import get_scheduler_context
from agenda.main import app
from agenda.models.enums import JobType, WarningKind
from agenda.schemas.warning import WarningEntry
from agenda.services.warnings import record_warning
from agenda.utils.rate_limit import limiter
from tests.conftest import ADMIN_KEY, create_appointment

HEADERS = {"X-Admin-Key": ADMIN_KEY}


@pytest_asyncio.fixture
async def client(db, ctx) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler_context] = lambda: ctx
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _schedule(ctx, **kwargs):
    return await ctx.store.schedule(
        JobType.REMINDER, {}, ctx.now() + timedelta(hours=1), **kwargs
    )


@pytest.mark.asyncio
async def test_admin_routes_require_key(client):
    resp = await client.get("/admin/jobs")
    assert resp.status_code == 403

    resp = await client.get("/admin/jobs", headers={"X-Admin-Key": "wrong"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_jobs(client, ctx):
    appointment_id = uuid.uuid4()
    job_id = await _schedule(ctx, appointment_id=appointment_id)
    await ctx.store.schedule(JobType.REPETITION_LINK, {}, ctx.now() + timedelta(days=7))

    resp = await client.get("/admin/jobs", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["count"] == 2

    resp = await client.get(
        "/admin/jobs", params={"job_type": "reminder", "appointment_id": str(appointment_id)}, headers=HEADERS
    )
    data = resp.json()
    assert data["count"] == 1
    assert data["jobs"][0]["id"] == str(job_id)
    assert data["jobs"][0]["status"] == "scheduled"


@pytest.mark.asyncio
async def test_list_jobs_by_status(client, ctx):
    job_id = await _schedule(ctx)
    await ctx.store.cancel(job_id)

    resp = await client.get("/admin/jobs", headers=HEADERS)
    assert resp.json()["count"] == 0

    resp = await client.get("/admin/jobs", params={"status": "cancelled"}, headers=HEADERS)
    assert [j["id"] for j in resp.json()["jobs"]] == [str(job_id)]


@pytest.mark.asyncio
async def test_list_jobs_rejects_naive_due_before(client):
    resp = await client.get("/admin/jobs", params={"due_before": "2024-01-01T10:00:00"}, headers=HEADERS)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_cancel_job(client, ctx):
    job_id = await _schedule(ctx)

    resp = await client.post(f"/admin/jobs/{job_id}/cancel", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"id": str(job_id), "cancelled": True}

    resp = await client.post(f"/admin/jobs/{job_id}/cancel", headers=HEADERS)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_cancel_unknown_job(client):
    resp = await client.post(f"/admin/jobs/{uuid.uuid4()}/cancel", headers=HEADERS)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_warnings(client, db, owner):
    appointment = await create_appointment(db, owner, start_at=datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))
    await record_warning(
        db,
        owner.id,
        appointment.id,
        [WarningEntry(participant_id=uuid.uuid4(), kind=WarningKind.NO_PACKAGE, message="No package assigned")],
    )
    await db.commit()

    resp = await client.get("/admin/warnings", params={"owner_id": str(owner.id)}, headers=HEADERS)
    assert resp.status_code == 200
    [warning] = resp.json()["warnings"]
    assert warning["appointment_id"] == str(appointment.id)
    assert warning["entries"][0]["kind"] == "No Package"
    assert warning["status"] == "pending"

    resp = await client.get("/admin/warnings", params={"status": "resolved"}, headers=HEADERS)
    assert resp.json()["warnings"] == []


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
