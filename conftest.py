import json
from collections import Counter

import httpx
import pytest

from appellations_config import MapContext
from parcel_catalog import build_catalog

BASE_URL = "https://vins.example"


def parcel_entry(path, nom, center, commune="21464", nom_complet=None, bbox=None, commune_nom="Nuits-Saint-Georges"):
    lng, lat = center
    return {
        "nom": nom,
        "nomComplet": nom_complet or nom,
        "commune": commune,
        "communeNom": commune_nom,
        "departement": "21",
        "geojsonPath": path,
        "center": [lng, lat],
        "bbox": bbox if bbox is not None else [lng - 0.001, lat - 0.001, lng + 0.001, lat + 0.001],
    }


def square_feature(bbox, **properties):
    min_lng, min_lat, max_lng, max_lat = bbox
    ring = [[min_lng, min_lat], [max_lng, min_lat], [max_lng, max_lat], [min_lng, max_lat], [min_lng, min_lat]]
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring]},
        "properties": properties,
    }


def geometry_document(entry):
    return {
        "type": "FeatureCollection",
        "features": [square_feature(entry["bbox"], app=entry["nom"], nomcom=entry["communeNom"])],
    }


class FakeGeoServer:
    """Serveur de fichiers factice : chemin -> document JSON, compteur de requêtes"""

    def __init__(self, documents=None, failing=()):
        self.documents = dict(documents or {})
        self.failing = set(failing)
        self.calls = Counter()
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        self.calls[path] += 1
        self.requests.append(request)
        if path in self.failing:
            return httpx.Response(500, text="boom")
        if path not in self.documents:
            return httpx.Response(404, text="not found")
        payload = self.documents[path]
        if isinstance(payload, str):
            return httpx.Response(200, text=payload)
        return httpx.Response(200, content=json.dumps(payload).encode("utf-8"))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url=BASE_URL)


@pytest.fixture
def context() -> MapContext:
    return MapContext(base_url=BASE_URL, index_path="data/parcelles-index.json", detail_zoom=12, max_parcels=800)


@pytest.fixture
def entries():
    return [
        parcel_entry("aoc/21/21464/01012.geojson", "Nuits-Saint-Georges", (4.79, 46.99),
                     bbox=[4.78, 46.98, 4.80, 47.00]),
        parcel_entry("aoc/21/21464/01013.geojson", "Nuits-Saint-Georges premier cru", (4.85, 47.05),
                     nom_complet="Nuits-Saint-Georges premier cru Les Vaucrains",
                     bbox=[4.849, 47.049, 4.851, 47.051]),
        parcel_entry("aoc/21/21231/00001.geojson", "Gevrey-Chambertin", (5.50, 48.00),
                     commune="21231", commune_nom="Gevrey-Chambertin",
                     bbox=[5.40, 47.90, 5.60, 48.10]),
    ]


@pytest.fixture
def catalog(entries):
    return build_catalog(entries)


@pytest.fixture
def geo_server(entries):
    return FakeGeoServer({e["geojsonPath"]: geometry_document(e) for e in entries})
