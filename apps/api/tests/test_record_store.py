"""
Tests for consolidated record persistence.
"""

from fundsync.services.reconciler import ConsolidatedRecord

from conftest import load_year


class TestFinancialRecordStore:

    async def test_upsert_is_idempotent(self, record_store):
        fields = {"revenue": 1000.0, "net_income": 100.0, "pe_ratio": 10.0}

        await record_store.upsert_consolidated_record("petr4", 2023, fields, ["ward", "fundamentus"])
        await record_store.upsert_consolidated_record("PETR4", 2023, fields, ["ward", "fundamentus"])

        records = await record_store.load_records("PETR4")
        assert len(records) == 1
        assert records[0].ticker == "PETR4"
        assert records[0].revenue == 1000.0
        assert records[0].data_source == "ward+fundamentus"

    async def test_null_never_erases_stored_value(self, record_store):
        await record_store.upsert_consolidated_record(
            "VALE3", 2023, {"revenue": 1000.0, "roe": 0.2}, ["ward"]
        )
        await record_store.upsert_consolidated_record(
            "VALE3", 2023, {"roe": 0.25}, ["fundamentus"]
        )

        stored = await load_year(record_store, "VALE3", 2023)
        assert stored.revenue == 1000.0
        assert stored.roe == 0.25
        assert stored.data_source == "fundamentus"

    async def test_empty_provenance_keeps_previous(self, record_store):
        await record_store.upsert_consolidated_record(
            "VALE3", 2023, {"eps": 1.0}, ["ward"], {"eps": "ward"}
        )
        await record_store.upsert_consolidated_record("VALE3", 2023, {"eps": 1.0}, [])

        stored = await load_year(record_store, "VALE3", 2023)
        assert stored.data_source == "ward"
        assert stored.field_sources == {"eps": "ward"}

    async def test_records_are_loaded_oldest_first(self, record_store):
        for year in (2023, 2019, 2021):
            await record_store.upsert_consolidated_record("ITUB4", year, {"eps": float(year)}, ["ward"])

        records = await record_store.load_records("itub4")
        assert [r.year for r in records] == [2019, 2021, 2023]
        assert await load_year(record_store, "ITUB4", 2000) is None

    async def test_round_trip_through_consolidated_record(self, record_store):
        await record_store.upsert_consolidated_record(
            "WEGE3",
            2023,
            {"eps": 3.0, "market_cap": 1e11},
            ["ward", "brapi_pro"],
            {"eps": "ward", "market_cap": "brapi_pro"},
        )
        consolidated = ConsolidatedRecord.from_record(await load_year(record_store, "WEGE3", 2023))

        assert consolidated.fields == {"eps": 3.0, "market_cap": 1e11}
        assert consolidated.providers == ["ward", "brapi_pro"]
        assert consolidated.source_of("market_cap") == "brapi_pro"
