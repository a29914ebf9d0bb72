"""
Contrôleur de viewport : décide quelles géométries charger quand la carte s'arrête.

Le rendu (Mapbox ou autre) est un collaborateur externe : il reçoit des
listes de features GeoJSON via deux callables (points et polygones).
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from appellation_search import NavigationTarget, suggest
from appellations_config import MapContext
from geometry_cache import GeometryCache, GeometryFetchError, features_bounds, sort_by_render_order
from parcel_catalog import AppellationsError, CatalogIndex, in_bbox

logger = logging.getLogger(__name__)

SEARCH_PAGE_LIMIT = 50

Renderer = Callable[[List[Dict[str, Any]]], Any]


class ParcelNotFoundError(AppellationsError, LookupError):
    """Aucune parcelle du catalogue ne correspond à la cible de navigation."""


class ViewportStatus(str, enum.Enum):
    BELOW_THRESHOLD = "below_threshold"
    DROPPED = "dropped"
    EMPTY = "empty"
    TOO_MANY = "too_many"
    RENDERED = "rendered"


@dataclass(frozen=True)
class ViewportOutcome:
    status: ViewportStatus
    parcels_in_view: int = 0
    rendered: int = 0


class LoadingGate:
    """Verrou à une place : un seul cycle de chargement à la fois, les autres sont abandonnés"""

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


async def _deliver(renderer: Optional[Renderer], features: List[Dict[str, Any]]) -> None:
    if renderer is None:
        return
    result = renderer(features)
    if inspect.isawaitable(result):
        await result


class ViewportController:
    def __init__(
        self,
        catalog: CatalogIndex,
        cache: GeometryCache,
        context: MapContext,
        render_polygons: Optional[Renderer] = None,
        render_points: Optional[Renderer] = None,
    ):
        self._catalog = catalog
        self._cache = cache
        self._context = context
        self._render_polygons = render_polygons
        self._render_points = render_points
        self.gate = LoadingGate()

    @property
    def catalog(self) -> CatalogIndex:
        return self._catalog

    @property
    def state(self) -> str:
        return "loading" if self.gate.held else "idle"

    def replace_catalog(self, catalog: CatalogIndex) -> None:
        """Remplace le catalogue en bloc (rechargement de l'index)"""
        self._catalog = catalog

    def initial_points(self) -> List[Dict[str, Any]]:
        """Toutes les parcelles en points, pour la couche de vue d'ensemble"""
        return [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": list(parcel.center)},
                "properties": {
                    "id": parcel.geojson_path,
                    "nom": parcel.nom,
                    "nomComplet": parcel.nom_complet,
                    "commune": parcel.commune_nom,
                    "departement": parcel.departement,
                },
            }
            for parcel in self._catalog.all()
        ]

    async def start(self) -> None:
        await _deliver(self._render_points, self.initial_points())

    async def on_viewport_settled(self, bbox: Any, zoom: float) -> ViewportOutcome:
        """
        Fin de déplacement de la carte.

        - zoom sous le seuil de détail : aucun polygone chargé
        - cycle déjà en cours : événement abandonné (le suivant recalculera l'emprise)
        - trop de parcelles non visibles dans l'emprise : cycle annulé, rien n'est chargé
        """
        if zoom < self._context.detail_zoom:
            return ViewportOutcome(ViewportStatus.BELOW_THRESHOLD)

        if not self.gate.try_acquire():
            logger.debug("Chargement déjà en cours, viewport ignoré")
            return ViewportOutcome(ViewportStatus.DROPPED)

        try:
            parcels = in_bbox(self._catalog, bbox)
            if not parcels:
                return ViewportOutcome(ViewportStatus.EMPTY)

            visible = self._cache.visible
            not_visible = {p.geojson_path for p in parcels if p.geojson_path not in visible}
            if len(not_visible) > self._context.max_parcels:
                logger.warning(
                    "Trop de parcelles à charger (%d > %d), zoomer davantage",
                    len(not_visible),
                    self._context.max_parcels,
                )
                return ViewportOutcome(ViewportStatus.TOO_MANY, parcels_in_view=len(parcels))

            records = await self._cache.ensure_visible(parcels)
            await _deliver(self._render_polygons, records)
            return ViewportOutcome(ViewportStatus.RENDERED, parcels_in_view=len(parcels), rendered=len(records))
        finally:
            self.gate.release()

    async def show_parcel(self, target: NavigationTarget) -> Dict[str, Any]:
        """
        Affiche une parcelle choisie dans la recherche.

        Raises:
            ParcelNotFoundError: cible absente du catalogue
            GeometryFetchError: géométrie indisponible
        """
        parcel = self._catalog.find(target.geojson_path, target.commune)
        if parcel is None:
            raise ParcelNotFoundError(f"Parcelle non trouvée : {target.geojson_path} ({target.commune})")

        record = await self._cache.load_one(parcel)
        if record is None:
            raise GeometryFetchError(f"Géométrie indisponible pour {parcel.nom_complet}")

        await _deliver(self._render_polygons, [record])
        return {
            "parcel": parcel,
            "record": record,
            "commune_nom": record["properties"].get("nomcom") or parcel.commune_nom,
            "bounds": features_bounds([record]),
        }

    async def show_search_results(self, query: str, limit: int = SEARCH_PAGE_LIMIT) -> Dict[str, Any]:
        """Page de résultats : toutes les parcelles dont le nom contient la requête"""
        parcels = suggest(self._catalog, query, limit=limit)
        if not parcels:
            return {"query": query, "records": [], "bounds": None}

        loaded = await asyncio.gather(*(self._cache.load_one(p) for p in parcels))
        records = sort_by_render_order(r for r in loaded if r is not None)
        if records:
            await _deliver(self._render_polygons, records)
        return {"query": query, "records": records, "bounds": features_bounds(records)}
