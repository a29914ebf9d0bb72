import asyncio
import re

import pytest

from conftest import FakeGeoServer, geometry_document, parcel_entry, square_feature
from geometry_cache import (
    GeometryCache,
    GeometryFetchError,
    LoadState,
    bbox_area,
    features_bounds,
    get_color_for_appellation,
    sort_by_render_order,
)
from parcel_catalog import ParcelSummary, build_catalog

HSL = re.compile(r"^hsl\((\d+), (\d+)%, (\d+)%\)$")


def run_with_cache(server, context, scenario):
    async def run():
        async with server.client() as client:
            cache = GeometryCache(client, context)
            return await scenario(cache)

    return asyncio.run(run())


def test_color_known_value():
    assert get_color_for_appellation("ab") == "hsl(225, 65%, 45%)"


@pytest.mark.parametrize("nom", ["Nuits-Saint-Georges", "Vosne-Romanée premier cru", "Échezeaux", "x" * 200])
def test_color_is_stable_and_in_range(nom):
    color = get_color_for_appellation(nom)
    assert get_color_for_appellation(nom) == color
    hue, saturation, lightness = (int(v) for v in HSL.match(color).groups())
    assert 0 <= hue < 360
    assert 60 <= saturation < 80
    assert 40 <= lightness < 60


def test_color_is_memoized():
    get_color_for_appellation.cache_clear()
    first = get_color_for_appellation("Meursault")
    hits = get_color_for_appellation.cache_info().hits
    assert get_color_for_appellation("Meursault") is first
    assert get_color_for_appellation.cache_info().hits == hits + 1


def test_color_depends_only_on_name(catalog):
    a, b = catalog.all()[0], catalog.all()[1]
    assert get_color_for_appellation(a.nom) == get_color_for_appellation("Nuits-Saint-Georges")
    assert get_color_for_appellation(b.nom) == get_color_for_appellation(str(b.nom))


def test_ensure_visible_enriches_and_sorts(catalog, geo_server, context):
    records = run_with_cache(geo_server, context, lambda cache: cache.ensure_visible(catalog.all()))

    assert [r["properties"]["geojsonPath"] for r in records] == [
        "aoc/21/21231/00001.geojson",
        "aoc/21/21464/01012.geojson",
        "aoc/21/21464/01013.geojson",
    ]
    props = records[1]["properties"]
    assert props["app"] == "Nuits-Saint-Georges"
    assert props["nomComplet"] == "Nuits-Saint-Georges"
    assert props["commune"] == "21464"
    assert props["color"] == get_color_for_appellation("Nuits-Saint-Georges")
    assert records[1]["geometry"]["type"] == "Polygon"


def test_ensure_visible_is_idempotent(catalog, geo_server, context):
    async def scenario(cache):
        first = await cache.ensure_visible(catalog.all())
        fetched = cache.fetch_count
        second = await cache.ensure_visible(catalog.all())
        return first, second, fetched, cache.fetch_count

    first, second, fetched, fetched_after = run_with_cache(geo_server, context, scenario)
    assert first == second
    assert fetched == fetched_after == 3
    assert all(count == 1 for count in geo_server.calls.values())


def test_duplicate_requests_are_coalesced(catalog, geo_server, context):
    parcel = catalog.all()[0]

    async def scenario(cache):
        batch, single = await asyncio.gather(
            cache.ensure_visible([parcel, parcel, parcel]),
            cache.load_one(parcel),
        )
        return cache, batch, single

    cache, batch, single = run_with_cache(geo_server, context, scenario)
    assert geo_server.calls[parcel.geojson_path] == 1
    assert len(batch) == 1
    assert batch[0] is single
    assert cache.state(parcel.geojson_path) is LoadState.LOADED


def test_cached_geometry_is_promoted_without_io(catalog, geo_server, context):
    a, b, _ = catalog.all()

    async def scenario(cache):
        await cache.ensure_visible([a, b])
        await cache.ensure_visible([b])
        visible_after_shrink = cache.visible_ids
        await cache.ensure_visible([a, b])
        return cache, visible_after_shrink

    cache, visible_after_shrink = run_with_cache(geo_server, context, scenario)
    assert visible_after_shrink == [b.geojson_path]
    assert sorted(cache.visible_ids) == sorted([a.geojson_path, b.geojson_path])
    assert cache.cached_count == 2
    assert cache.fetch_count == 2


def test_failure_does_not_block_batch(catalog, entries, context):
    failing = entries[1]["geojsonPath"]
    server = FakeGeoServer({e["geojsonPath"]: geometry_document(e) for e in entries}, failing={failing})

    async def scenario(cache):
        first = await cache.ensure_visible(catalog.all())
        second = await cache.ensure_visible(catalog.all())
        return cache, first, second

    cache, first, second = run_with_cache(server, context, scenario)
    assert len(first) == 2
    assert failing not in [r["properties"]["geojsonPath"] for r in first]
    assert cache.state(failing) is LoadState.FAILED
    assert failing not in cache.visible_ids
    # Pas de nouvelle tentative pendant la session
    assert server.calls[failing] == 1
    assert second == first


@pytest.mark.parametrize("payload", [
    "{pas du json",
    {"type": "FeatureCollection", "features": []},
    {"type": "FeatureCollection", "features": [{"type": "Feature", "properties": {}}]},
    {"type": "FeatureCollection", "features": [
        {"type": "Feature", "geometry": {"type": "Hexagon", "coordinates": []}, "properties": {}},
    ]},
    [1, 2, 3],
    {"type": "FeatureCollection", "features": {"x": 1}},
    {"type": "FeatureCollection", "features": ["pas une entité"]},
    {"type": "FeatureCollection", "features": [
        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [4.79, 47.0]}, "properties": [1, 2]},
    ]},
])
def test_malformed_payload_is_a_fetch_error(context, payload):
    entry = parcel_entry("bad.geojson", "Pommard", (4.79, 47.0))
    parcel = ParcelSummary.from_dict(entry)
    server = FakeGeoServer({"bad.geojson": payload})

    async def scenario(cache):
        with pytest.raises(GeometryFetchError):
            await cache.fetch_geometry(parcel)
        return await cache.ensure_visible([parcel])

    assert run_with_cache(server, context, scenario) == []


def test_malformed_payload_only_fails_its_parcel(context):
    good_entry = parcel_entry("good.geojson", "Volnay", (4.76, 46.97), bbox=[4.75, 46.96, 4.77, 46.98])
    bad_entry = parcel_entry("bad.geojson", "Pommard", (4.79, 47.0))
    server = FakeGeoServer({
        "good.geojson": geometry_document(good_entry),
        "bad.geojson": {"type": "FeatureCollection", "features": {"x": 1}},
    })
    good, bad = ParcelSummary.from_dict(good_entry), ParcelSummary.from_dict(bad_entry)

    async def scenario(cache):
        return cache, await cache.ensure_visible([good, bad])

    cache, records = run_with_cache(server, context, scenario)
    assert [r["properties"]["geojsonPath"] for r in records] == ["good.geojson"]
    assert cache.state("bad.geojson") is LoadState.FAILED
    assert cache.visible_ids == ["good.geojson"]


def test_unexpected_error_is_isolated(catalog, geo_server, context, monkeypatch):
    broken = catalog.all()[0].geojson_path

    async def scenario(cache):
        fetch = cache.fetch_geometry

        async def flaky(parcel):
            if parcel.geojson_path == broken:
                raise RuntimeError("boom")
            return await fetch(parcel)

        monkeypatch.setattr(cache, "fetch_geometry", flaky)
        return cache, await cache.ensure_visible(catalog.all())

    cache, records = run_with_cache(geo_server, context, scenario)
    assert len(records) == 2
    assert broken not in [r["properties"]["geojsonPath"] for r in records]
    assert cache.state(broken) is LoadState.FAILED



def test_missing_file_is_a_fetch_error(context):
    parcel = ParcelSummary.from_dict(parcel_entry("absent.geojson", "Pommard", (4.79, 47.0)))

    async def scenario(cache):
        return await cache.load_one(parcel), cache.state(parcel.geojson_path)

    record, state = run_with_cache(FakeGeoServer(), context, scenario)
    assert record is None
    assert state is LoadState.FAILED


def test_records_without_bbox_render_last(entries, context):
    no_bbox = parcel_entry("x/no-bbox.geojson", "Volnay", (4.79, 46.99))
    document = geometry_document(no_bbox)
    del no_bbox["bbox"]
    catalog = build_catalog([no_bbox] + entries)
    server = FakeGeoServer({e["geojsonPath"]: geometry_document(e) for e in entries})
    server.documents[no_bbox["geojsonPath"]] = document

    records = run_with_cache(server, context, lambda cache: cache.ensure_visible(catalog.all()))
    areas = [bbox_area(r) for r in records]
    assert areas == sorted(areas, reverse=True)
    assert records[-1]["properties"]["geojsonPath"] == "x/no-bbox.geojson"


def test_sort_by_render_order_is_stable():
    small = {"properties": {"bbox": [0, 0, 1, 1], "id": "small"}}
    large = {"properties": {"bbox": [0, 0, 3, 3], "id": "large"}}
    bare_a = {"properties": {"id": "a"}}
    bare_b = {"properties": {"id": "b", "bbox": None}}
    ordered = sort_by_render_order([bare_a, small, bare_b, large])
    assert [r["properties"]["id"] for r in ordered] == ["large", "small", "a", "b"]


def test_features_bounds():
    polygon = square_feature([4.0, 47.0, 4.5, 47.5])
    multi = {
        "type": "Feature",
        "geometry": {
            "type": "MultiPolygon",
            "coordinates": [
                square_feature([5.0, 46.0, 5.1, 46.1])["geometry"]["coordinates"],
                square_feature([3.9, 46.5, 4.0, 46.6])["geometry"]["coordinates"],
            ],
        },
    }
    assert features_bounds([polygon]) == ((4.0, 47.0), (4.5, 47.5))
    assert features_bounds([polygon, multi]) == ((3.9, 46.0), (5.1, 47.5))
    assert features_bounds([]) is None
