"""
Cache des géométries détaillées des parcelles (GeoJSON par parcelle)

Architecture :
- Chargement paresseux : une requête HTTP par parcelle, au premier besoin
- Cache mémoire pour toute la session (pas d'expiration, pas d'éviction)
- Requêtes concurrentes pour un même identifiant fusionnées en une seule
- Ensemble "visible" remplacé en bloc à chaque lot chargé
- Un échec de chargement retire la parcelle du lot sans faire échouer le lot
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import httpx
from shapely.errors import ShapelyError
from shapely.geometry import shape

from appellations_config import MapContext
from parcel_catalog import AppellationsError, ParcelSummary

logger = logging.getLogger(__name__)

# Feature GeoJSON enrichie (propriétés du catalogue + couleur)
GeometryRecord = Dict[str, Any]


class GeometryFetchError(AppellationsError):
    """Géométrie d'une parcelle indisponible (réseau ou contenu invalide)."""


class LoadState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _appellation_hash(nom: str) -> int:
    # Hash de type Java sur les unités UTF-16, avec le même débordement
    # que l'arithmétique JavaScript (décalage sur 32 bits, somme non bornée)
    encoded = nom.encode("utf-16-le")
    value = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        value = code_unit + (_to_int32(_to_int32(value) << 5) - value)
    return value


@functools.lru_cache(maxsize=None)
def get_color_for_appellation(nom: str) -> str:
    """Couleur HSL stable pour un nom d'appellation (même nom => même couleur)"""
    magnitude = abs(_appellation_hash(nom))
    hue = magnitude % 360
    saturation = 60 + magnitude % 20
    lightness = 40 + magnitude % 20

    return f"hsl({hue}, {saturation}%, {lightness}%)"


def bbox_area(record: GeometryRecord) -> float:
    bbox = (record.get("properties") or {}).get("bbox")
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4:
        return 0.0
    min_lng, min_lat, max_lng, max_lat = bbox
    return (max_lng - min_lng) * (max_lat - min_lat)


def sort_by_render_order(records: Iterable[GeometryRecord]) -> List[GeometryRecord]:
    """
    Les plus grandes parcelles d'abord (dessinées dessous), les plus petites
    en dernier pour rester cliquables. Sans emprise : aire 0.
    """
    return sorted(records, key=bbox_area, reverse=True)


def _exterior_coordinates(geometry: Optional[Dict[str, Any]]) -> List[Sequence[float]]:
    if not geometry:
        return []
    if geometry.get("type") == "Polygon":
        return list(geometry.get("coordinates", [[]])[0])
    if geometry.get("type") == "MultiPolygon":
        return [coord for polygon in geometry.get("coordinates", []) for coord in polygon[0]]
    return []


def features_bounds(records: Iterable[GeometryRecord]) -> Optional[Tuple[Tuple[float, float], Tuple[float, float]]]:
    """Emprise combinée des anneaux extérieurs : ((minLng, minLat), (maxLng, maxLat))"""
    coords = [coord for record in records for coord in _exterior_coordinates(record.get("geometry"))]
    if not coords:
        return None

    lngs = [c[0] for c in coords]
    lats = [c[1] for c in coords]
    return (min(lngs), min(lats)), (max(lngs), max(lats))


def enrich_feature(feature: Dict[str, Any], parcel: ParcelSummary) -> GeometryRecord:
    record = {key: value for key, value in feature.items() if key != "properties"}
    record["type"] = "Feature"
    record["properties"] = {
        **(feature.get("properties") or {}),
        **parcel.to_dict(),
        "color": get_color_for_appellation(parcel.nom),
    }
    return record


class GeometryCache:
    """Chargeur + cache des géométries, partagé par la carte et la navigation"""

    def __init__(self, client: httpx.AsyncClient, context: MapContext):
        self._client = client
        self._context = context
        self._records: Dict[str, GeometryRecord] = {}
        self._failed: Set[str] = set()
        self._in_flight: Dict[str, "asyncio.Task[Optional[GeometryRecord]]"] = {}
        self._visible: Mapping[str, GeometryRecord] = MappingProxyType({})
        self.fetch_count = 0

    @property
    def cached_count(self) -> int:
        return len(self._records)

    @property
    def visible_ids(self) -> List[str]:
        return list(self._visible)

    @property
    def visible(self) -> Mapping[str, GeometryRecord]:
        return self._visible

    def state(self, geojson_path: str) -> LoadState:
        if geojson_path in self._records:
            return LoadState.LOADED
        if geojson_path in self._in_flight:
            return LoadState.LOADING
        if geojson_path in self._failed:
            return LoadState.FAILED
        return LoadState.UNLOADED

    def get(self, geojson_path: str) -> Optional[GeometryRecord]:
        return self._records.get(geojson_path)

    async def fetch_geometry(self, parcel: ParcelSummary) -> GeometryRecord:
        """
        Télécharge le GeoJSON d'une parcelle et retourne la première feature enrichie.

        Raises:
            GeometryFetchError: erreur réseau, HTTP, JSON invalide, collection
                vide ou géométrie invalide.
        """
        url = self._context.resolve(parcel.geojson_path)
        self.fetch_count += 1
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise GeometryFetchError(f"Impossible de charger le GeoJSON : {parcel.geojson_path} ({exc})") from exc
        except ValueError as exc:
            raise GeometryFetchError(f"GeoJSON illisible : {parcel.geojson_path}") from exc

        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list) or not features:
            raise GeometryFetchError(f"Aucune entité dans {parcel.geojson_path}")

        feature = features[0]
        if not isinstance(feature, dict) or not isinstance(feature.get("properties") or {}, dict):
            raise GeometryFetchError(f"Entité mal formée dans {parcel.geojson_path}")
        try:
            geometry = shape(feature["geometry"])
        except (KeyError, IndexError, TypeError, AttributeError, ValueError, ShapelyError) as exc:
            raise GeometryFetchError(f"Géométrie invalide dans {parcel.geojson_path} : {exc}") from exc
        if geometry.is_empty:
            raise GeometryFetchError(f"Géométrie vide dans {parcel.geojson_path}")

        return enrich_feature(feature, parcel)

    async def _load(self, parcel: ParcelSummary) -> Optional[GeometryRecord]:
        try:
            record = await self.fetch_geometry(parcel)
        except GeometryFetchError as exc:
            logger.warning("Échec du chargement de la parcelle %s : %s", parcel.nom, exc)
            self._failed.add(parcel.geojson_path)
            return None
        except Exception:
            # Une parcelle ne doit jamais faire échouer tout le lot
            logger.exception("Erreur inattendue pour la parcelle %s", parcel.nom)
            self._failed.add(parcel.geojson_path)
            return None
        finally:
            self._in_flight.pop(parcel.geojson_path, None)

        self._records[parcel.geojson_path] = record
        return record

    def _schedule(self, parcel: ParcelSummary) -> "asyncio.Task[Optional[GeometryRecord]]":
        task = self._in_flight.get(parcel.geojson_path)
        if task is None:
            task = asyncio.ensure_future(self._load(parcel))
            self._in_flight[parcel.geojson_path] = task
        return task

    async def load_one(self, parcel: ParcelSummary) -> Optional[GeometryRecord]:
        """Charge une parcelle (cache + fusion des requêtes) sans toucher à l'ensemble visible"""
        cached = self._records.get(parcel.geojson_path)
        if cached is not None:
            return cached
        if parcel.geojson_path in self._failed:
            return None
        return await self._schedule(parcel)

    async def ensure_visible(self, parcels: Iterable[ParcelSummary]) -> List[GeometryRecord]:
        """
        Rend visibles les parcelles demandées et retourne le lot trié pour l'affichage.

        - déjà visible : réutilisée sans I/O
        - déjà en cache : promue dans l'ensemble visible, sans I/O
        - sinon : un seul chargement par identifiant, tous en parallèle

        Le lot n'est retourné qu'une fois tous les chargements terminés ;
        les parcelles en échec en sont simplement absentes.
        """
        batch: Dict[str, GeometryRecord] = {}
        pending: Dict[str, "asyncio.Task[Optional[GeometryRecord]]"] = {}

        for parcel in parcels:
            key = parcel.geojson_path
            if key in batch or key in pending:
                continue
            if key in self._visible:
                batch[key] = self._visible[key]
            elif key in self._records:
                batch[key] = self._records[key]
            elif key in self._failed:
                continue
            else:
                pending[key] = self._schedule(parcel)

        if pending:
            results = await asyncio.gather(*pending.values())
            for key, record in zip(pending, results):
                if record is not None:
                    batch[key] = record

        self._visible = MappingProxyType(dict(batch))
        return sort_by_render_order(batch.values())
