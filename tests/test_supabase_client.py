from __future__ import annotations

import asyncio

import pytest

from billsync.core.errors import ConfigurationError
from billsync.services.supabase_client import ADMIN_NOT_INITIALIZED, SupabaseService
from tests.conftest import FakeSupabase, api_error


def test_query_applies_filters_order_and_limit(settings):
    fake = FakeSupabase(
        {
            "customer_sales": [
                {"id": "a", "customer_id": "c1", "date": "2024-05-01", "inv_id": None},
                {"id": "b", "customer_id": "c1", "date": "2024-05-03", "inv_id": None},
                {"id": "c", "customer_id": "c1", "date": "2024-05-02", "inv_id": "77:1"},
                {"id": "d", "customer_id": "c2", "date": "2024-05-04", "inv_id": None},
            ]
        }
    )
    service = SupabaseService(settings, client=fake)

    result = asyncio.run(
        service.query(
            "customer_sales",
            filters=[("customer_id", "eq", "c1"), ("inv_id", "is", None)],
            order="date",
            ascending=False,
            limit=5,
        )
    )

    assert result.success
    assert [row["id"] for row in result.data] == ["b", "a"]


def test_mapping_filters_mean_equality(settings):
    fake = FakeSupabase({"products": [{"id": "p1", "organization_id": "org-1"}, {"id": "p2", "organization_id": "org-2"}]})
    service = SupabaseService(settings, client=fake)

    result = asyncio.run(service.query("products", filters={"organization_id": "org-2"}))

    assert [row["id"] for row in result.data] == ["p2"]


def test_unknown_filter_operator_is_rejected(settings):
    service = SupabaseService(settings, client=FakeSupabase())

    with pytest.raises(ValueError):
        asyncio.run(service.query("products", filters=[("price", "like", "%a%")]))


def test_update_and_delete_require_filters(settings):
    service = SupabaseService(settings, client=FakeSupabase())

    with pytest.raises(ValueError):
        asyncio.run(service.update("customer_sales", {"inv_id": "1"}, filters=None))
    with pytest.raises(ValueError):
        asyncio.run(service.remove("customer_sales", filters={}))


def test_api_errors_become_failed_results(settings):
    fake = FakeSupabase()
    fake.fail("customer_sales", "insert", api_error("duplicate key value", code="409"))
    service = SupabaseService(settings, client=fake)

    result = asyncio.run(service.insert("customer_sales", {"id": "a"}))

    assert not result.success
    assert result.error == "duplicate key value"
    assert result.status_code == 409


def test_postgres_error_codes_leave_status_unset(settings):
    fake = FakeSupabase()
    fake.fail("customer_sales", "select", api_error("relation does not exist", code="42P01"))
    service = SupabaseService(settings, client=fake)

    result = asyncio.run(service.query("customer_sales"))

    assert not result.success
    assert result.status_code is None


def test_admin_calls_fail_cleanly_without_service_role(settings):
    service = SupabaseService(settings, client=FakeSupabase())

    assert not service.has_admin
    result = asyncio.run(service.admin_update("customer_sales", {"inv_id": "1"}, filters={"id": "a"}))

    assert not result.success
    assert result.error == ADMIN_NOT_INITIALIZED


def test_admin_client_is_used_for_admin_calls(settings):
    anon = FakeSupabase({"customer_sales": [{"id": "a", "inv_id": None}]})
    admin = FakeSupabase({"customer_sales": [{"id": "a", "inv_id": None}]})
    service = SupabaseService(settings, client=anon, admin_client=admin)

    asyncio.run(service.admin_update("customer_sales", {"inv_id": "901:1"}, filters={"id": "a"}))

    assert admin.tables["customer_sales"][0]["inv_id"] == "901:1"
    assert anon.tables["customer_sales"][0]["inv_id"] is None


def test_inv_id_update_is_idempotent(settings):
    fake = FakeSupabase({"customer_sales": [{"id": "a", "inv_id": None}]})
    service = SupabaseService(settings, client=fake)

    for _ in range(2):
        result = asyncio.run(service.update("customer_sales", {"inv_id": "901:1"}, filters={"id": "a"}))
        assert result.success

    assert fake.tables["customer_sales"] == [{"id": "a", "inv_id": "901:1"}]


def test_missing_anon_key_is_a_configuration_error(settings):
    settings.supabase_anon_key = None
    service = SupabaseService(settings)

    with pytest.raises(ConfigurationError):
        asyncio.run(service.query("products"))
