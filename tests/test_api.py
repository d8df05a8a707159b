from decimal import Decimal

import pytest

from portal.db.base import utcnow
from portal.services import lock_store, purchase_store


@pytest.mark.asyncio
async def test_requires_authentication(client):
    response = await client.get("/api/applications")
    assert response.status_code == 401
    assert response.json()["code"] == "missing_token"


@pytest.mark.asyncio
async def test_rejects_invalid_token(client):
    response = await client.get("/api/applications", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_health_is_public(client):
    response = await client.get("/api/health/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


@pytest.mark.asyncio
async def test_list_applications_hides_contact_details(client, auth_headers, lead_factory):
    lead = await lead_factory()

    response = await client.get("/api/applications", headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    item = body["items"][0]
    assert item["application"]["id"] == lead.id
    assert "email" not in item["application"]
    assert item["pricing_rule"] == "standard"
    assert Decimal(item["price"]) == Decimal("50.00")


@pytest.mark.asyncio
async def test_list_applications_filters(client, db_session, auth_headers, lead_factory):
    lead = await lead_factory()
    await purchase_store.record_purchase(db_session, lead.id, "dealer-1", Decimal("50.00"))
    await db_session.commit()

    hidden = await client.get("/api/applications", headers=auth_headers())
    shown = await client.get("/api/applications?hidePurchased=false", headers=auth_headers())

    assert hidden.json()["count"] == 0
    assert shown.json()["items"][0]["is_purchased"] is True


@pytest.mark.asyncio
async def test_purchased_applications_include_contact_details(client, db_session, auth_headers, lead_factory):
    lead = await lead_factory()
    await purchase_store.record_purchase(db_session, lead.id, "dealer-1", Decimal("50.00"), "pi_1")
    await db_session.commit()

    response = await client.get("/api/applications/purchased", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()[0]["application"]["email"] == "jordan@example.com"


@pytest.mark.asyncio
async def test_lock_status_and_release(client, db_session, auth_headers, lead_factory):
    lead = await lead_factory()
    await lock_store.acquire_lock(db_session, lead.id, "dealer-1", "temporary-24h", "pi_1", now=utcnow())

    theirs = await client.get(f"/api/applications/{lead.id}/lock", headers=auth_headers("dealer-2"))
    assert theirs.json()["is_locked"] is True
    assert theirs.json()["is_own_lock"] is False
    assert "locked_by" not in theirs.json()

    denied = await client.delete(f"/api/applications/{lead.id}/lock", headers=auth_headers("dealer-2"))
    assert denied.json()["success"] is False

    released = await client.delete(f"/api/applications/{lead.id}/lock", headers=auth_headers())
    assert released.json()["success"] is True


@pytest.mark.asyncio
async def test_price_endpoint(client, auth_headers, lead_factory, lock_factory):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-2")

    response = await client.get(f"/api/applications/{lead.id}/price", headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["pricing_rule"] == "contested"
    assert Decimal(body["price"]) == Decimal("35.00")
    assert Decimal(body["discount_amount"]) == Decimal("15.00")


@pytest.mark.asyncio
async def test_price_of_unknown_application(client, auth_headers):
    response = await client.get("/api/applications/missing/price", headers=auth_headers())
    assert response.status_code == 404
    assert response.json()["code"] == "lead_not_found"


@pytest.mark.asyncio
async def test_download_requires_purchase(client, auth_headers, lead_factory):
    lead = await lead_factory()

    response = await client.post(
        "/api/applications/download", json={"application_ids": [lead.id]}, headers=auth_headers()
    )

    assert response.status_code == 403
    assert response.json()["code"] == "not_purchased"


@pytest.mark.asyncio
async def test_download_of_withdrawn_application_leaves_counter(client, db_session, auth_headers, lead_factory):
    lead = await lead_factory()
    await purchase_store.record_purchase(db_session, lead.id, "dealer-1", Decimal("50.00"))
    lead.status = "draft"
    await db_session.commit()

    response = await client.post(
        "/api/applications/download", json={"application_ids": [lead.id]}, headers=auth_headers()
    )

    assert response.status_code == 404
    assert response.json()["code"] == "lead_not_found"
    purchase = await purchase_store.get_active_purchase(db_session, lead.id, "dealer-1")
    await db_session.refresh(purchase)
    assert purchase.download_count == 0
    assert purchase.downloaded_at is None


@pytest.mark.asyncio
async def test_download_json_and_csv(client, db_session, auth_headers, lead_factory):
    lead = await lead_factory()
    await purchase_store.record_purchase(db_session, lead.id, "dealer-1", Decimal("50.00"))
    await db_session.commit()

    as_json = await client.post(
        "/api/applications/download", json={"application_ids": [lead.id]}, headers=auth_headers()
    )
    assert as_json.status_code == 200
    assert as_json.json()["items"][0]["phone_number"] == "403-555-0199"

    as_csv = await client.post(
        "/api/applications/download",
        json={"application_ids": [lead.id], "format": "csv"},
        headers=auth_headers(),
    )
    assert as_csv.status_code == 200
    assert as_csv.headers["content-type"].startswith("text/csv")
    lines = as_csv.text.strip().splitlines()
    assert lines[0].startswith("id,submitted_at,full_name,email")
    assert lead.id in lines[1]

    purchase = await purchase_store.get_active_purchase(db_session, lead.id, "dealer-1")
    await db_session.refresh(purchase)
    assert purchase.download_count == 2


@pytest.mark.asyncio
async def test_purchase_checkout_flow(client, gateway, auth_headers, lead_factory):
    lead = await lead_factory()

    started = await client.post(
        "/api/checkout/purchase", json={"application_ids": [lead.id]}, headers=auth_headers()
    )
    assert started.status_code == 200
    session_id = started.json()["session_id"]
    assert started.json()["redirect_url"].endswith(session_id)

    gateway.pay(session_id)
    confirmed = await client.post(f"/api/checkout/{session_id}/complete", headers=auth_headers())

    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "completed"
    assert confirmed.json()["applied"] == [lead.id]


@pytest.mark.asyncio
async def test_lock_checkout_conflict(client, auth_headers, lead_factory, lock_factory):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-2")

    response = await client.post(
        "/api/checkout/lock",
        json={"application_id": lead.id, "lock_type": "temporary-24h"},
        headers=auth_headers(),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "already_locked"


@pytest.mark.asyncio
async def test_lock_checkout_validates_lock_type(client, auth_headers, lead_factory):
    lead = await lead_factory()
    response = await client.post(
        "/api/checkout/lock",
        json={"application_id": lead.id, "lock_type": "purchase-lock"},
        headers=auth_headers(),
    )
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_settings_read_and_admin_update(client, auth_headers):
    current = await client.get("/api/settings", headers=auth_headers())
    assert current.status_code == 200
    assert Decimal(current.json()["standard_price"]) == Decimal("50.00")

    forbidden = await client.put("/api/settings", json={"standard_price": "60.00"}, headers=auth_headers())
    assert forbidden.status_code == 403

    updated = await client.put(
        "/api/settings",
        json={"standard_price": "60.00", "age_discount_percentage": 10},
        headers=auth_headers("admin-1", role="admin"),
    )
    assert updated.status_code == 200
    assert Decimal(updated.json()["standard_price"]) == Decimal("60.00")
    assert updated.json()["age_discount_percentage"] == 10


@pytest.mark.asyncio
async def test_lockout_periods_default_to_configured_fees(client, auth_headers):
    response = await client.get("/api/lockout-periods", headers=auth_headers())

    assert response.status_code == 200
    periods = {period["lock_type"]: period for period in response.json()}
    assert Decimal(periods["temporary-24h"]["fee"]) == Decimal("4.99")
    assert periods["permanent"]["hours"] is None


@pytest.mark.asyncio
async def test_admin_coupons(client, auth_headers):
    denied = await client.get("/api/admin/coupons", headers=auth_headers())
    assert denied.status_code == 403

    response = await client.get("/api/admin/coupons", headers=auth_headers("admin-1", role="admin"))
    assert response.status_code == 200
    assert response.json()[0]["id"] == "SPRING10"


@pytest.mark.asyncio
async def test_admin_reconcile(client, db_session, gateway, auth_headers, lead_factory, pricing):
    from portal.services import checkout

    lead = await lead_factory()
    started = await checkout.begin_purchase(db_session, gateway, "dealer-1", [lead.id], pricing)
    gateway.pay(started.session_id)

    response = await client.post(
        f"/api/admin/checkouts/{started.session_id}/reconcile",
        headers=auth_headers("admin-1", role="admin"),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert await purchase_store.has_active_purchase(db_session, lead.id, "dealer-1")
