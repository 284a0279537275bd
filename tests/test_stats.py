import re

import pytest

from crowdsale_sync import (
    AggregationError,
    PurchaseEvent,
    StatsAggregator,
)

from conftest import ALICE, BOB

DECIMAL_RE = re.compile(r"^\d+\.\d+$")


def add_purchases(storage, n):
    for i in range(n):
        storage.insert_purchase(
            PurchaseEvent(
                purchaser=ALICE,
                beneficiary=BOB,
                wei_paid=(i + 1) * 10**17,
                token_amount=(i + 1) * 10**20,
                tx_hash="0x%064x" % (i + 1),
                block_number=100 + i,
                log_index=0,
                observed_at="2025-01-01T00:00:%02d.000000Z" % i,
            )
        )


class TestComputeStats:
    async def test_seven_rows_returns_five_latest(self, fake_chain, storage):
        add_purchases(storage, 7)
        storage.upsert_whitelist(ALICE, True, "2025-01-01T00:00:00.000000Z")

        stats = await StatsAggregator(fake_chain, storage).compute_stats()

        assert stats["transactionCount"] == 7
        assert stats["whitelistCount"] == 1
        latest = stats["latestTransactions"]
        assert [t["txHash"] for t in latest] == ["0x%064x" % i for i in (7, 6, 5, 4, 3)]
        created = [t["createdAt"] for t in latest]
        assert created == sorted(created, reverse=True)
        assert latest[0] == {
            "txHash": "0x%064x" % 7,
            "address": ALICE,
            "ethAmount": "0.7",
            "tokenAmount": "700.0",
            "createdAt": "2025-01-01T00:00:06.000000Z",
        }

    async def test_caps_are_decimal_strings(self, fake_chain, storage):
        fake_chain.cap = 250 * 10**18
        fake_chain.soft_cap = 25 * 10**17
        stats = await StatsAggregator(fake_chain, storage).compute_stats()
        assert stats["hardcapEth"] == "250.0"
        assert stats["softcapEth"] == "2.5"
        assert DECIMAL_RE.match(stats["hardcapEth"])

    async def test_missing_soft_cap_defaults_to_zero(self, fake_chain, storage):
        fake_chain.soft_cap = None
        stats = await StatsAggregator(fake_chain, storage).compute_stats()
        assert stats["softcapEth"] == "0.0"

    async def test_empty_ledger(self, fake_chain, storage):
        stats = await StatsAggregator(fake_chain, storage).compute_stats()
        assert stats["transactionCount"] == 0
        assert stats["whitelistCount"] == 0
        assert stats["latestTransactions"] == []

    async def test_onchain_failure_fails_whole_call(self, fake_chain, storage):
        fake_chain.fail_reads = True
        with pytest.raises(AggregationError):
            await StatsAggregator(fake_chain, storage).compute_stats()

    async def test_lenient_mode_substitutes_offchain_defaults(self, fake_chain, storage):
        add_purchases(storage, 2)
        storage.close()
        stats = await StatsAggregator(fake_chain, storage, lenient=True).compute_stats()
        assert stats["transactionCount"] == 0
        assert stats["whitelistCount"] == 0
        assert stats["latestTransactions"] == []
        assert stats["hardcapEth"] == "100.0"

    async def test_strict_mode_fails_on_offchain_error(self, fake_chain, storage):
        storage.close()
        with pytest.raises(AggregationError):
            await StatsAggregator(fake_chain, storage, lenient=False).compute_stats()


class TestComputeRaised:
    async def test_formats_wei_raised(self, fake_chain, storage):
        fake_chain.wei_raised = 12345 * 10**15
        assert await StatsAggregator(fake_chain, storage).compute_raised() == {"ethRaised": "12.345"}

    async def test_failure_is_aggregation_error(self, fake_chain, storage):
        fake_chain.fail_reads = True
        with pytest.raises(AggregationError):
            await StatsAggregator(fake_chain, storage).compute_raised()
