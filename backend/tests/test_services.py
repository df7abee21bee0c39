"""Supabase client, profile service and PhonePe gateway against mocked HTTP."""

import base64
import hashlib
import json

import fakeredis
import httpx
import pytest
import pytest_asyncio

from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import (
    BusinessLogicError,
    ResourceNotFoundError,
    UpstreamServiceError,
)
from akshayapatra.services.phonepe import PhonePeGateway, build_transaction_id, x_verify
from akshayapatra.services.profile import ProfileService, completion_from_profile
from akshayapatra.services.supabase import SupabaseClient
from akshayapatra.utils.cache import set_redis

from tests.conftest import USER_ID, complete_profile


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, path), responder in self.routes.items():
            if request.method == method and request.url.path == path:
                return responder(request) if callable(responder) else responder
        return httpx.Response(404, json={"message": "no route", "code": "PGRST404"})

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


def supabase(routes) -> tuple[SupabaseClient, Recorder]:
    recorder = Recorder(routes)
    client = SupabaseClient(
        "user-token",
        base_url="https://db.test",
        api_key="anon",
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


@pytest.mark.unit
@pytest.mark.asyncio
class TestSupabaseClient:
    async def test_headers_and_rpc(self):
        client, recorder = supabase(
            {("POST", "/rest/v1/rpc/ping"): httpx.Response(200, json={"ok": True})}
        )

        assert await client.rpc("ping", {"a": 1}) == {"ok": True}

        request = recorder.requests[0]
        assert request.headers["apikey"] == "anon"
        assert request.headers["authorization"] == "Bearer user-token"
        assert json.loads(request.content) == {"a": 1}

    async def test_select_filters(self):
        client, recorder = supabase(
            {("GET", "/rest/v1/user_profiles"): httpx.Response(200, json=[{"id": "1"}])}
        )

        row = await client.select_one("user_profiles", "id", {"id": "eq.1"})

        assert row == {"id": "1"}
        params = recorder.requests[0].url.params
        assert params["select"] == "id"
        assert params["id"] == "eq.1"
        assert params["limit"] == "1"

    async def test_error_carries_postgrest_code(self):
        client, _ = supabase(
            {
                ("POST", "/rest/v1/rpc/missing"): httpx.Response(
                    404, json={"code": "PGRST202", "message": "Could not find the function"}
                )
            }
        )

        with pytest.raises(UpstreamServiceError) as exc:
            await client.rpc("missing")
        assert exc.value.upstream_code == "PGRST202"
        assert exc.value.status_code == 502

    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        client = SupabaseClient("t", base_url="https://db.test", transport=httpx.MockTransport(boom))
        with pytest.raises(UpstreamServiceError):
            await client.rpc("anything")

    async def test_empty_body(self):
        client, _ = supabase({("POST", "/rest/v1/rpc/void"): httpx.Response(204)})
        assert await client.rpc("void") is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestProfileService:
    async def test_ensure_profile_retries_without_scheme(self):
        def ensure(request):
            if "p_scheme_id" in json.loads(request.content):
                return httpx.Response(404, json={"code": "PGRST202", "message": "no such signature"})
            return httpx.Response(204)

        client, recorder = supabase({("POST", "/rest/v1/rpc/ensure_profile2"): ensure})
        service = ProfileService(client, USER_ID)

        await service.ensure_profile("Asha Rao", "9876543210", "REF1", "scheme-gold")

        first, second = recorder.bodies("/rest/v1/rpc/ensure_profile2")
        assert first["p_scheme_id"] == "scheme-gold"
        assert "p_scheme_id" not in second
        assert second["p_user_id"] == USER_ID

    async def test_ensure_profile_other_errors_propagate(self):
        client, _ = supabase(
            {("POST", "/rest/v1/rpc/ensure_profile2"): httpx.Response(400, json={"code": "P0001", "message": "bad"})}
        )
        with pytest.raises(UpstreamServiceError):
            await ProfileService(client, USER_ID).ensure_profile("Asha Rao")

    async def test_update_profile_drops_unknown_fields(self):
        def patch(request):
            body = json.loads(request.content)
            return httpx.Response(200, json=[{"id": USER_ID, **body}])

        client, recorder = supabase({("PATCH", "/rest/v1/user_profiles"): patch})

        profile = await ProfileService(client, USER_ID).update_profile(
            {"country": "India", "is_phone_verified": True, "role": "admin"}
        )

        body = recorder.bodies("/rest/v1/user_profiles")[0]
        assert body["country"] == "India"
        assert "is_phone_verified" not in body
        assert "role" not in body
        assert "updated_at" in body
        assert profile.country == "India"
        assert recorder.requests[0].headers["prefer"] == "return=representation"

    async def test_update_profile_with_nothing_allowed(self):
        client, recorder = supabase({})
        with pytest.raises(BusinessLogicError):
            await ProfileService(client, USER_ID).update_profile({"role": "admin"})
        assert recorder.requests == []

    async def test_update_profile_missing_row(self):
        client, _ = supabase({("PATCH", "/rest/v1/user_profiles"): httpx.Response(200, json=[])})
        with pytest.raises(ResourceNotFoundError):
            await ProfileService(client, USER_ID).update_profile({"country": "India"})

    async def test_check_completion_from_row(self):
        row = complete_profile(street_address=None, is_phone_verified=False).model_dump()
        client, _ = supabase({("GET", "/rest/v1/user_profiles"): httpx.Response(200, json=[row])})

        status = await ProfileService(client, USER_ID).check_completion()

        assert not status.is_complete
        assert status.missing_steps == ["address", "registration_fee"]
        assert status.details.has_location

    async def test_check_completion_without_row(self):
        client, _ = supabase({("GET", "/rest/v1/user_profiles"): httpx.Response(200, json=[])})
        status = await ProfileService(client, USER_ID).check_completion()
        assert status.missing_steps == ["location", "address", "profile", "registration_fee"]

    async def test_completion_serialises_camel_case(self):
        dumped = completion_from_profile(complete_profile()).model_dump(by_alias=True)
        assert dumped["isComplete"] is True
        assert dumped["missingSteps"] == []
        assert dumped["details"]["hasRegistrationFee"] is True

    async def test_registration_fee_needed_uses_phone_verification(self):
        client, recorder = supabase({})
        service = ProfileService(client, USER_ID)

        assert await service.registration_fee_needed(complete_profile(is_phone_verified=False))
        assert not await service.registration_fee_needed(complete_profile())
        assert recorder.requests == []

    async def test_consume_update_flags(self):
        client, recorder = supabase(
            {
                ("POST", "/rest/v1/rpc/consume_user_update_flags"): httpx.Response(
                    200, json=[{"referral_update_flag": True}]
                )
            }
        )

        row = await ProfileService(client, USER_ID).consume_update_flags(clear=True)

        assert row == {"referral_update_flag": True}
        body = recorder.bodies("/rest/v1/rpc/consume_user_update_flags")[0]
        assert body["p_clear_transactions"] is True


@pytest_asyncio.fixture
async def fake_redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    set_redis(client)
    yield client
    set_redis(None)
    await client.flushall()
    await client.aclose()


@pytest.mark.cache
@pytest.mark.asyncio
class TestSchemeCache:
    async def test_schemes_are_cached(self, fake_redis):
        rows = [{"id": "s1", "name": "Gold", "status": "active", "subscription_amount": 500}]
        client, recorder = supabase({("GET", "/rest/v1/schemes"): httpx.Response(200, json=rows)})
        service = ProfileService(client, USER_ID)

        first = await service.list_schemes()
        second = await service.list_schemes()

        assert first[0].name == "Gold"
        assert second[0].name == "Gold"
        assert len(recorder.requests) == 1
        keys = [key async for key in fake_redis.scan_iter(match="schemes:*")]
        assert len(keys) == 1

    async def test_scheme_errors_return_empty(self, fake_redis):
        client, _ = supabase(
            {("GET", "/rest/v1/schemes"): httpx.Response(500, json={"message": "down"})}
        )
        assert await ProfileService(client, USER_ID).list_schemes() == []


@pytest.mark.unit
class TestPhonePeHelpers:
    def test_transaction_id_format(self):
        txid = build_transaction_id("1234abcd-5678-90ef-aaaa-bbbbccccdddd", now=1.0)
        assert txid == "REG1234abcd56rs"

    def test_x_verify(self, monkeypatch):
        monkeypatch.setattr(settings, "phonepe_salt_key", "salt")
        monkeypatch.setattr(settings, "phonepe_salt_index", "1")
        expected = hashlib.sha256(b"payload/pg/v1/paysalt").hexdigest() + "###1"
        assert x_verify("payload/pg/v1/pay") == expected


@pytest.mark.unit
@pytest.mark.asyncio
class TestPhonePeGateway:
    def _gateway(self, session_user, db_routes, phonepe_routes):
        db, db_recorder = supabase(db_routes)
        pp_recorder = Recorder(phonepe_routes)
        gateway = PhonePeGateway(db, session_user, transport=httpx.MockTransport(pp_recorder))
        return gateway, db_recorder, pp_recorder

    async def test_initiate_registration_payment(self, session_user):
        gateway, db_recorder, pp_recorder = self._gateway(
            session_user,
            {
                ("POST", "/rest/v1/rpc/ensure_registration_fee_invoice"): httpx.Response(
                    200, json="9f1c2d3e-0000-4000-8000-000000000001"
                ),
                ("PATCH", "/rest/v1/invoices"): httpx.Response(200, json=[{"id": "x"}]),
            },
            {
                ("POST", "/apis/hermes/pg/v1/pay"): httpx.Response(
                    200,
                    json={
                        "success": True,
                        "data": {"instrumentResponse": {"redirectInfo": {"url": "https://pay.test/abc"}}},
                    },
                )
            },
        )

        result = await gateway.initiate_registration_payment(
            "scheme-gold", origin="https://api.akshayapatra.test"
        )

        assert result.redirect_url == "https://pay.test/abc"
        assert result.txid.startswith("REG9f1c2d3e00")
        assert result.invoice_id == "9f1c2d3e-0000-4000-8000-000000000001"

        invoice_args = db_recorder.bodies("/rest/v1/rpc/ensure_registration_fee_invoice")[0]
        assert invoice_args == {
            "p_user_id": session_user.id,
            "p_scheme_id": "scheme-gold",
            "p_amount": settings.registration_fee_rs,
        }

        pay_request = pp_recorder.requests[0]
        encoded = json.loads(pay_request.content)["request"]
        payload = json.loads(base64.b64decode(encoded))
        assert payload["amount"] == settings.registration_fee_rs * 100
        assert payload["merchantTransactionId"] == result.txid
        assert payload["redirectUrl"] == (
            f"https://api.akshayapatra.test/api/payments/regfee/callback/{result.txid}"
        )
        assert pay_request.headers["x-verify"] == x_verify(encoded + "/pg/v1/pay")

        assert db_recorder.bodies("/rest/v1/invoices")[0] == {"gateway_txid": result.txid}

    async def test_initiate_requires_scheme(self, session_user):
        gateway, _, _ = self._gateway(session_user, {}, {})
        with pytest.raises(BusinessLogicError):
            await gateway.initiate_registration_payment(None)

    async def test_initiate_without_redirect_fails(self, session_user):
        gateway, _, _ = self._gateway(
            session_user,
            {("POST", "/rest/v1/rpc/ensure_registration_fee_invoice"): httpx.Response(200, json="inv-1")},
            {("POST", "/apis/hermes/pg/v1/pay"): httpx.Response(200, json={"success": False})},
        )
        with pytest.raises(UpstreamServiceError):
            await gateway.initiate_registration_payment("scheme-gold")

    async def test_settle_success(self, session_user):
        txid = "REGabc1234567lz0k3"
        status_path = f"/apis/hermes/pg/v1/status/{settings.phonepe_merchant_id}/{txid}"
        gateway, db_recorder, _ = self._gateway(
            session_user,
            {
                ("GET", "/rest/v1/invoices"): httpx.Response(
                    200, json=[{"id": "inv-1", "type": "registration", "status": "pending"}]
                ),
                ("POST", "/rest/v1/rpc/handle_successful_payment_reg"): httpx.Response(204),
            },
            {("GET", status_path): httpx.Response(200, json={"code": "PAYMENT_SUCCESS"})},
        )

        assert await gateway.settle(txid)
        assert db_recorder.bodies("/rest/v1/rpc/handle_successful_payment_reg") == [
            {"p_invoice_id": "inv-1", "p_gateway_txid": txid, "p_user_id": session_user.id}
        ]

    async def test_settle_already_paid_is_noop(self, session_user):
        txid = "REGabc1234567lz0k3"
        status_path = f"/apis/hermes/pg/v1/status/{settings.phonepe_merchant_id}/{txid}"
        gateway, db_recorder, _ = self._gateway(
            session_user,
            {("GET", "/rest/v1/invoices"): httpx.Response(200, json=[{"id": "inv-1", "status": "paid"}])},
            {("GET", status_path): httpx.Response(200, json={"code": "PAYMENT_SUCCESS"})},
        )

        assert await gateway.settle(txid)
        assert db_recorder.bodies("/rest/v1/rpc/handle_successful_payment_reg") == []

    async def test_settle_failed_payment(self, session_user):
        txid = "REGabc1234567lz0k3"
        status_path = f"/apis/hermes/pg/v1/status/{settings.phonepe_merchant_id}/{txid}"
        gateway, db_recorder, _ = self._gateway(
            session_user,
            {("GET", "/rest/v1/invoices"): httpx.Response(200, json=[{"id": "inv-1", "status": "pending"}])},
            {("GET", status_path): httpx.Response(200, json={"code": "PAYMENT_ERROR"})},
        )

        assert not await gateway.settle(txid)
        assert db_recorder.bodies("/rest/v1/rpc/handle_successful_payment_reg") == []
