import json

import pytest
from fastapi.testclient import TestClient

from property_selection.api.app import create_app
from property_selection.pipeline import SelectionPipeline


CONFIG = {"propertyDataSourceId": "parcels", "ownerDataSourceId": "owners", "maxResults": 10}
OWNERS = {"100": [{"NAMN": "Anna Svensson", "OBJECTID": 1}, {"NAMN": "Bo Berg", "OBJECTID": 2}]}


@pytest.fixture
def api(registry, fake_queries, parcel_factory):
    created = []

    def factory():
        queries = fake_queries(parcels=[parcel_factory(100)], owners=OWNERS)
        created.append(queries)
        return SelectionPipeline(registry, queries=queries)

    app = create_app(pipeline_factory=factory)
    return app, created


def _click(client, selection=(), session_id="s1", **overrides):
    payload = {
        "session_id": session_id,
        "point": {"x": 674000.0, "y": 6580000.0, "wkid": 3006},
        "config": CONFIG,
        "selection": list(selection),
    }
    payload.update(overrides)
    r = client.post("/api/selection/click", json=payload)
    assert r.status_code == 200, r.text
    return r.json()


def test_click_then_toggle(api):
    app, created = api
    with TestClient(app) as client:
        first = _click(client)
        assert first["status"] == "success"
        assert [row["id"] for row in first["updated_rows"]] == ["100_1", "100_2"]
        assert [row["owner_text"] for row in first["updated_rows"]] == ["A*** S***", "B* B***"]
        assert all(row["raw_owner"] is None for row in first["updated_rows"])
        assert "Anna Svensson" not in json.dumps(first)

        second = _click(client, selection=first["updated_rows"], raw_results=first["raw_query_results"])
        assert second["to_remove"] == ["100"]
        assert second["updated_rows"] == []
        assert second["raw_query_results"] == {}
        assert second["request_id"] > first["request_id"]

        assert client.get("/health").json() == {"status": "ok", "sessions": 1}
    assert len(created) == 1
    assert len(app.state.sessions) == 0


def test_sessions_get_their_own_pipeline(api):
    app, created = api
    client = TestClient(app)
    _click(client, session_id="a")
    _click(client, session_id="b")
    assert len(created) == 2
    assert all(len(q.owner_calls) == 1 for q in created)


def test_click_without_point(api):
    app, _ = api
    client = TestClient(app)
    body = _click(client, point=None)
    assert body["status"] == "error"
    assert body["error_type"] == "GEOMETRY_ERROR"
    assert body["failure_reason"] == "no_map_point"


def test_click_with_unknown_data_source(api):
    app, _ = api
    client = TestClient(app)
    body = _click(client, config=dict(CONFIG, ownerDataSourceId="elsewhere"))
    assert body["error_type"] == "VALIDATION_ERROR"
    assert body["failure_reason"] == "owner_data_source_invalid"


def test_malformed_selection_is_rejected(api):
    app, _ = api
    client = TestClient(app)
    r = client.post(
        "/api/selection/click",
        json={"point": {"x": 1, "y": 2}, "config": CONFIG, "selection": [{"fnr": 1}]},
    )
    assert r.status_code == 422


def test_validate_url_route(api):
    app, _ = api
    client = TestClient(app)
    good = "https://maps.example.se/arcgis/rest/services/Fastighet/MapServer/0"
    assert client.post("/api/validate-url", json={"url": good}).json() == {"valid": True}
    assert client.post("/api/validate-url", json={"url": good.replace("https", "http")}).json() == {"valid": False}
    body = client.post("/api/validate-url", json={"url": good, "allowed_hosts": ["other.example.se"]}).json()
    assert body == {"valid": False}
    assert client.post("/api/validate-url", json={"url": "https://10.0.0.5/arcgis/rest/services/A/MapServer/0"}).json() == {"valid": False}


def test_reconcile_route(api):
    app, _ = api
    client = TestClient(app)

    def row(fnr, suffix=1):
        return {"id": f"{fnr}_{suffix}", "fnr": fnr, "uuid": f"u{fnr}", "label": str(fnr), "owner_text": "x"}

    r = client.post(
        "/api/selection/reconcile",
        json={
            "new_rows": [row(1), row(3)],
            "existing": [row(1), row(2)],
            "toggle_enabled": True,
            "max_results": 5,
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert body["to_remove"] == ["1"]
    assert [x["id"] for x in body["to_add"]] == ["3_1"]
    assert [x["id"] for x in body["updated_rows"]] == ["2_1", "3_1"]

    r = client.post("/api/selection/reconcile", json={"max_results": 0})
    assert r.status_code == 422


def test_masked_click_never_returns_raw_owner_fields(registry, fake_queries, parcel_factory):
    owners = {"100": [{"NAMN": "Anna Svensson", "BOSTADR": "Storgatan 12", "POSTNR": "753 20", "POSTADR": "Uppsala"}]}
    app = create_app(
        pipeline_factory=lambda: SelectionPipeline(
            registry, queries=fake_queries(parcels=[parcel_factory(100)], owners=owners)
        )
    )
    client = TestClient(app)

    masked = _click(client, session_id="masked")
    text = json.dumps(masked)
    assert masked["updated_rows"][0]["owner_text"] == "A*** S***, St*****, 75320 Uppsala"
    assert "Anna Svensson" not in text
    assert "Storgatan 12" not in text

    plain = _click(client, session_id="plain", config=dict(CONFIG, enablePIIMasking=False))
    assert plain["updated_rows"][0]["raw_owner"]["BOSTADR"] == "Storgatan 12"


def test_reconcile_route_drops_raw_owner_when_masking(api):
    app, _ = api
    client = TestClient(app)
    row = {
        "id": "1_1",
        "fnr": 1,
        "uuid": "u1",
        "label": "1",
        "owner_text": "A*** S***",
        "raw_owner": {"NAMN": "Anna Svensson"},
    }
    body = client.post("/api/selection/reconcile", json={"new_rows": [row]}).json()
    assert body["updated_rows"][0]["raw_owner"] is None
    body = client.post(
        "/api/selection/reconcile", json={"new_rows": [row], "enable_pii_masking": False}
    ).json()
    assert body["updated_rows"][0]["raw_owner"] == {"NAMN": "Anna Svensson"}


def test_evicted_session_closes_its_pipeline(registry, fake_queries, parcel_factory):
    pipelines = []

    class TrackedPipeline(SelectionPipeline):
        closed = False

        async def close(self):
            self.closed = True
            await super().close()

    def factory():
        pipeline = TrackedPipeline(
            registry, queries=fake_queries(parcels=[parcel_factory(100)], owners=OWNERS)
        )
        pipelines.append(pipeline)
        return pipeline

    app = create_app(pipeline_factory=factory)
    app.state.sessions.max_entries = 1
    with TestClient(app) as client:
        _click(client, session_id="a")
        _click(client, session_id="b")
        assert [p.closed for p in pipelines] == [True, False]
        assert len(app.state.sessions) == 1
    assert [p.closed for p in pipelines] == [True, True]
