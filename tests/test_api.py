import pytest
from aiohttp.test_utils import TestClient, TestServer

from crowdsale_sync import (
    DEFAULT_ADMIN_THEME,
    DEFAULT_SITE_CONTENT,
    CrowdsaleSync,
    PurchaseEvent,
    load_config,
)

from conftest import ALICE, BOB

ADMIN = {"X-API-Key": "admin-secret"}


async def make_client(cfg, chain, storage):
    service = CrowdsaleSync(cfg, role="api", chain=chain, storage=storage)
    app = await service.create_api_app()
    return TestClient(TestServer(app))


@pytest.fixture
async def client(app_config, fake_chain, storage):
    async with await make_client(app_config, fake_chain, storage) as c:
        yield c


class TestAdminAuth:
    async def test_missing_key_is_rejected(self, client):
        resp = await client.get("/api/admin/stats")
        assert resp.status == 401

    async def test_wrong_key_is_rejected(self, client):
        resp = await client.get("/api/admin/stats", headers={"X-API-Key": "nope"})
        assert resp.status == 401

    async def test_unconfigured_key_disables_admin(self, config_file, fake_chain, storage):
        cfg = load_config(config_file(ADMIN_API_KEY=""))
        async with await make_client(cfg, fake_chain, storage) as c:
            resp = await c.get("/api/admin/stats", headers=ADMIN)
            assert resp.status == 500

    async def test_public_routes_need_no_key(self, client):
        resp = await client.get("/api/public/raised")
        assert resp.status == 200


class TestWhitelistAdd:
    async def test_adds_account(self, client, fake_chain, storage):
        resp = await client.post("/api/admin/whitelist/add", json={"account": ALICE}, headers=ADMIN)
        body = await resp.json()
        assert resp.status == 200
        assert body["success"] is True
        assert body["txHash"] == "0x%064x" % 1
        assert body["replicaUpdated"] is True
        assert storage.get_whitelist_record(ALICE)["is_whitelisted_on_chain"] is True

    async def test_already_whitelisted_has_no_tx_hash(self, client, fake_chain):
        fake_chain.whitelisted.add(BOB)
        resp = await client.post("/api/admin/whitelist/add", json={"account": BOB}, headers=ADMIN)
        body = await resp.json()
        assert resp.status == 200
        assert body["success"] is True
        assert "txHash" not in body
        assert "already" in body["message"]

    @pytest.mark.parametrize("payload", [{}, {"account": "0x123"}, {"account": 12}, ["x"]])
    async def test_invalid_account_is_400(self, client, fake_chain, payload):
        resp = await client.post("/api/admin/whitelist/add", json=payload, headers=ADMIN)
        assert resp.status == 400
        assert "error" in await resp.json()
        assert fake_chain.reads == []

    async def test_invalid_json_is_400(self, client):
        resp = await client.post("/api/admin/whitelist/add", data="{nope", headers=ADMIN)
        assert resp.status == 400

    async def test_revert_is_500_with_details(self, client, fake_chain, storage):
        fake_chain.revert_next = True
        resp = await client.post("/api/admin/whitelist/add", json={"account": ALICE}, headers=ADMIN)
        body = await resp.json()
        assert resp.status == 500
        assert body["error"] == "failed to process whitelist transaction"
        assert body["details"] == "transaction reverted on-chain"
        assert storage.get_whitelist_record(ALICE) is None


class TestReads:
    async def test_stats(self, client, storage):
        storage.insert_purchase(
            PurchaseEvent(ALICE, BOB, 5 * 10**17, 500 * 10**18, "0x" + "aa" * 32, 10, 0, "2025-02-01T00:00:00.000000Z")
        )
        resp = await client.get("/api/admin/stats", headers=ADMIN)
        body = await resp.json()
        assert resp.status == 200
        assert body["transactionCount"] == 1
        assert body["latestTransactions"][0]["ethAmount"] == "0.5"
        assert body["hardcapEth"] == "100.0"
        assert body["softcapEth"] == "0.0"

    async def test_stats_chain_failure_is_500(self, client, fake_chain):
        fake_chain.fail_reads = True
        resp = await client.get("/api/admin/stats", headers=ADMIN)
        assert resp.status == 500
        assert (await resp.json())["error"] == "failed to load admin stats"

    async def test_raised_and_alias(self, client, fake_chain):
        fake_chain.wei_raised = 3 * 10**18
        for path in ("/api/public/raised", "/api/public/weiraised"):
            resp = await client.get(path)
            assert await resp.json() == {"ethRaised": "3.0"}

    async def test_whitelist_status(self, client, fake_chain):
        fake_chain.whitelisted.add(ALICE)
        resp = await client.get(f"/api/public/whitelist-status/{ALICE}")
        assert await resp.json() == {"isWhitelisted": True}
        resp = await client.get(f"/api/public/whitelist-status/{BOB}")
        assert await resp.json() == {"isWhitelisted": False}

    async def test_whitelist_status_rejects_malformed(self, client):
        resp = await client.get("/api/public/whitelist-status/0xnothex")
        assert resp.status == 400

    async def test_health(self, client):
        resp = await client.get("/health")
        body = await resp.json()
        assert body["ok"] is True
        assert body["ingestor"]["state"] == "disconnected"


class TestSiteSettings:
    async def test_defaults(self, client):
        resp = await client.get("/api/public/site-settings")
        assert await resp.json() == {"theme": DEFAULT_ADMIN_THEME, "content": DEFAULT_SITE_CONTENT}

    async def test_update_then_read(self, client):
        content = {"content": {"hero": {"title": "Hello"}}}
        resp = await client.post("/api/admin/site-settings", json={"content": content}, headers=ADMIN)
        assert resp.status == 200
        resp = await client.get("/api/public/site-settings")
        assert (await resp.json())["content"] == content

    async def test_update_requires_object(self, client):
        resp = await client.post("/api/admin/site-settings", json={"content": "x"}, headers=ADMIN)
        assert resp.status == 400


class TestCors:
    async def test_allowed_origin_preflight(self, config_file, fake_chain, storage):
        cfg = load_config(config_file(CORS_ALLOW_ORIGINS="http://localhost:3000, http://localhost:3001/"))
        async with await make_client(cfg, fake_chain, storage) as c:
            resp = await c.options(
                "/api/admin/stats", headers={"Origin": "http://localhost:3001"}
            )
            assert resp.status == 204
            assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3001"
            assert "X-API-Key" in resp.headers["Access-Control-Allow-Headers"]

    async def test_unknown_origin_gets_no_header(self, config_file, fake_chain, storage):
        cfg = load_config(config_file(CORS_ALLOW_ORIGINS=["http://localhost:3000"]))
        async with await make_client(cfg, fake_chain, storage) as c:
            resp = await c.get("/api/public/raised", headers={"Origin": "http://evil.example"})
            assert resp.status == 200
            assert "Access-Control-Allow-Origin" not in resp.headers
