import asyncio

import pytest

from property_selection.config import PipelineConfig, make_translator
from property_selection.enrichment import (
    EnrichmentContext,
    each_always,
    enrich,
    prepare_parcels,
    select_strategy,
)
from property_selection.errors import Cancelled, QueryError


def _context(queries, config, token=None):
    return EnrichmentContext(queries=queries, config=config, translate=make_translator(), token=token)


def _run(coro):
    return asyncio.run(coro)


def test_each_always_collects_failures_without_cancelling_siblings():
    async def ok(value):
        await asyncio.sleep(0)
        return value

    async def bad():
        raise QueryError("down")

    outcomes = _run(each_always([ok(1), bad(), ok(3)]))
    assert [o.ok for o in outcomes] == [True, False, True]
    assert outcomes[2].value == 3
    assert isinstance(outcomes[1].error, QueryError)


def test_prepare_parcels_dedupes_skips_invalid_and_caps(parcel_factory):
    parcels = [
        parcel_factory(1),
        parcel_factory("1"),
        parcel_factory(None),
        parcel_factory(2, geometry=False),
        parcel_factory(3),
        parcel_factory(4),
    ]
    assert [p.fnr for p in prepare_parcels(parcels, 2)] == [1, 3]


def test_individual_strategy_two_owners_masked(fake_queries, parcel_factory, config):
    queries = fake_queries(
        parcels=[parcel_factory(100, object_id=1)],
        owners={"100": [{"NAMN": "Anna Svensson"}, {"NAMN": "Bo Berg"}]},
    )
    result = _run(enrich(queries.parcels, "individual", _context(queries, config)))
    assert [r.owner_text for r in result.rows] == ["A*** S***", "B* B***"]
    assert len({r.id for r in result.rows}) == 2
    assert all(r.fnr == 100 for r in result.rows)
    assert result.rows[0].id == "100_1"
    assert len(result.fnr_graphic_pairs) == 1


def test_owner_object_ids_drive_row_ids(fake_queries, parcel_factory, config):
    queries = fake_queries(
        parcels=[parcel_factory(100, object_id=1)],
        owners={"100": [{"NAMN": "Anna", "OBJECTID": 11, "ANDEL": "1/2"}, {"NAMN": "Bo", "OBJECTID": 12}]},
    )
    result = _run(enrich(queries.parcels, "individual", _context(queries, config)))
    assert [r.id for r in result.rows] == ["100_11", "100_12"]
    assert result.rows[0].label == "Fastighet 100\u00a0(1/2)"


def test_individual_queries_run_in_bounded_windows(fake_queries, parcel_factory):
    config = PipelineConfig(property_data_source_id="parcels", owner_data_source_id="owners", max_results=100)
    parcels = [parcel_factory(i, object_id=i) for i in range(12)]
    queries = fake_queries(parcels=parcels, owners={str(i): [{"NAMN": f"Owner {i}"}] for i in range(12)})
    result = _run(enrich(parcels, "individual", _context(queries, config)))
    assert len(result.rows) == 12
    assert len(queries.owner_calls) == 12
    assert queries.max_in_flight == 5


def test_cap_limits_owner_queries_and_rows(fake_queries, parcel_factory):
    config = PipelineConfig(property_data_source_id="parcels", owner_data_source_id="owners", max_results=3)
    parcels = [parcel_factory(i, object_id=i) for i in range(10)]
    owners = {str(i): [{"NAMN": "Anna"}, {"NAMN": "Bo"}] for i in range(10)}
    queries = fake_queries(parcels=parcels, owners=owners)
    result = _run(enrich(parcels, "individual", _context(queries, config)))
    assert len(result.rows) == 3
    assert len(queries.owner_calls) == 3
    assert [r.fnr for r in result.rows] == [0, 0, 1]


def test_failed_and_empty_owner_queries_yield_placeholders(fake_queries, parcel_factory, config):
    parcels = [parcel_factory(1), parcel_factory(2), parcel_factory(3)]
    queries = fake_queries(parcels=parcels, owners={"1": [{"NAMN": "Anna Svensson"}]}, failing=[2])
    result = _run(enrich(parcels, "individual", _context(queries, config)))
    assert [r.owner_text for r in result.rows] == ["A*** S***", "Owner query failed", "Unknown owner"]
    assert result.failed_fnrs == ["2"]
    assert result.rows[1].id == "2_1"
    assert result.rows[1].raw_owner.name == "Owner query failed"


def test_cancelled_owner_query_propagates(fake_queries, parcel_factory, config):
    class CancellingQueries(fake_queries):
        async def owners_by_fnr(self, fnr, data_source_id, token=None):
            raise Cancelled("aborted")

    queries = CancellingQueries(parcels=[parcel_factory(1)])
    with pytest.raises(Cancelled):
        _run(enrich(queries.parcels, "individual", _context(queries, config)))


def test_batch_strategy_uses_one_relationship_query(fake_queries, parcel_factory):
    config = PipelineConfig(
        property_data_source_id="parcels",
        owner_data_source_id="owners",
        enable_batch_owner_query=True,
        relationship_id=2,
    )
    assert select_strategy(config).name == "batch"
    parcels = [parcel_factory(1), parcel_factory(2), parcel_factory(1)]
    queries = fake_queries(parcels=parcels, owners={"1": [{"NAMN": "Anna"}, {"NAMN": "Bo"}]})
    result = _run(enrich(parcels, select_strategy(config), _context(queries, config)))
    assert queries.relationship_calls == [([1, 2], 2)]
    assert queries.owner_calls == []
    assert [r.owner_text for r in result.rows] == ["A***", "***", "Unknown owner"]


def test_batch_relationship_failure_degrades_to_placeholders(fake_queries, parcel_factory):
    config = PipelineConfig(
        property_data_source_id="parcels",
        owner_data_source_id="owners",
        enable_batch_owner_query=True,
        relationship_id=2,
    )
    parcels = [parcel_factory(1), parcel_factory(2), parcel_factory(3)]
    queries = fake_queries(parcels=parcels, relationship_error=QueryError("relationship query failed"))
    result = _run(enrich(parcels, "batch", _context(queries, config)))
    assert len(result.rows) == 3
    assert {r.owner_text for r in result.rows} == {"Owner query failed"}
    assert result.failed_fnrs == ["1", "2", "3"]


def test_batch_requires_relationship_id():
    config = PipelineConfig(property_data_source_id="parcels", enable_batch_owner_query=True)
    assert select_strategy(config).name == "individual"


def test_unknown_strategy_name(fake_queries, config):
    with pytest.raises(ValueError):
        _run(enrich([], "parallel", _context(fake_queries(), config)))


def test_superseded_batch_run_skips_relationship_query(fake_queries, parcel_factory):
    config = PipelineConfig(
        property_data_source_id="parcels",
        owner_data_source_id="owners",
        enable_batch_owner_query=True,
        relationship_id=2,
    )
    state = {"current": True}

    class SupersededQueries(fake_queries):
        async def owners_by_relationship(self, *args, **kwargs):
            state["current"] = False
            return await super().owners_by_relationship(*args, **kwargs)

    queries = SupersededQueries(parcels=[parcel_factory(1)], owners={"1": [{"NAMN": "Anna"}]})
    context = EnrichmentContext(
        queries=queries,
        config=config,
        translate=make_translator(),
        is_current=lambda: state["current"],
    )
    with pytest.raises(Cancelled):
        _run(enrich(queries.parcels, "batch", context))
    assert queries.relationship_calls == []


def test_individual_run_stops_between_windows_once_superseded(fake_queries, parcel_factory):
    config = PipelineConfig(property_data_source_id="parcels", owner_data_source_id="owners", max_results=20)
    parcels = [parcel_factory(i, object_id=i) for i in range(12)]
    queries = fake_queries(parcels=parcels)
    context = EnrichmentContext(
        queries=queries,
        config=config,
        translate=make_translator(),
        is_current=lambda: len(queries.owner_calls) < 5,
    )
    with pytest.raises(Cancelled):
        _run(enrich(parcels, "individual", context))
    assert len(queries.owner_calls) == 5


def test_rows_without_object_id_fall_back_to_uuid_or_fnr(fake_queries, parcel_factory):
    config = PipelineConfig(property_data_source_id="parcels", owner_data_source_id="owners", max_results=10)
    parcels = [parcel_factory(100, object_id=None), parcel_factory(200, object_id=None)]
    queries = fake_queries(owners={"100": [{"NAMN": "Anna Svensson"}]})
    parcels[1].uuid = None
    result = _run(enrich(parcels, "individual", _context(queries, config)))
    ids = [row.id for row in result.rows]
    assert ids == ["100_uuid-100", "200"]
    assert not any("None" in row_id for row_id in ids)
