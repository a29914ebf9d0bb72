"""
Index des parcelles d'appellations (catalogue léger)

Le catalogue est une liste plate de résumés de parcelles (nom, commune,
centre, emprise) chargée une seule fois au démarrage. Il sert de source
unique pour la recherche et pour les requêtes d'emprise (viewport).

Notes :
- L'index nom -> positions n'est qu'un accélérateur, reconstruit en entier
  à chaque chargement, jamais modifié ensuite.
- La requête d'emprise teste le centre de la parcelle, pas son polygone.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("geojsonPath", "nom", "nomComplet", "commune", "center")

Point = Tuple[float, float]
BBox = Tuple[float, float, float, float]


class AppellationsError(Exception):
    """Erreur de base du moteur de carte des appellations."""


class CatalogLoadError(AppellationsError, ValueError):
    """Catalogue injoignable ou mal formé."""


class QueryMalformedError(AppellationsError, ValueError):
    """Emprise mal formée (pas exactement 4 nombres ordonnés)."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _coerce_coords(value: Any, size: int, field: str) -> Tuple[float, ...]:
    if not isinstance(value, (list, tuple)) or len(value) != size or not all(_is_number(v) for v in value):
        raise CatalogLoadError(f"Champ « {field} » invalide : {size} nombres attendus, reçu {value!r}.")
    return tuple(float(v) for v in value)


@dataclass(frozen=True)
class ParcelSummary:
    """Entrée du catalogue : une parcelle d'appellation et sa position."""

    geojson_path: str
    nom: str
    nom_complet: str
    commune: str
    commune_nom: str
    departement: str
    center: Point
    bbox: Optional[BBox] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ParcelSummary":
        if not isinstance(raw, Mapping):
            raise CatalogLoadError(f"Entrée de catalogue invalide : {raw!r}")

        missing = [f for f in REQUIRED_FIELDS if raw.get(f) in (None, "")]
        if missing:
            raise CatalogLoadError(
                f"Champs requis manquants ({', '.join(missing)}) pour l'entrée {raw.get('geojsonPath')!r}."
            )

        bbox = raw.get("bbox")
        return cls(
            geojson_path=str(raw["geojsonPath"]),
            nom=str(raw["nom"]),
            nom_complet=str(raw["nomComplet"]),
            commune=str(raw["commune"]),
            commune_nom=str(raw.get("communeNom") or ""),
            departement=str(raw.get("departement") or ""),
            center=_coerce_coords(raw["center"], 2, "center"),
            bbox=_coerce_coords(bbox, 4, "bbox") if bbox is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Forme catalogue (clés camelCase du fichier d'index)"""
        return {
            "nom": self.nom,
            "nomComplet": self.nom_complet,
            "commune": self.commune,
            "communeNom": self.commune_nom,
            "departement": self.departement,
            "geojsonPath": self.geojson_path,
            "center": list(self.center),
            "bbox": list(self.bbox) if self.bbox is not None else None,
        }


class CatalogIndex:
    """Catalogue ordonné (ordre de chargement) + index nom normalisé -> positions"""

    def __init__(self, parcels: Sequence[ParcelSummary], name_index: Mapping[str, Tuple[int, ...]]):
        self._parcels = tuple(parcels)
        self._name_index = MappingProxyType(dict(name_index))

    def __len__(self) -> int:
        return len(self._parcels)

    def __iter__(self):
        return iter(self._parcels)

    def all(self) -> Tuple[ParcelSummary, ...]:
        return self._parcels

    def by_normalized_name(self, name: str) -> Tuple[int, ...]:
        return self._name_index.get(name.strip().lower(), ())

    def parcels_named(self, name: str) -> List[ParcelSummary]:
        return [self._parcels[i] for i in self.by_normalized_name(name)]

    def find(self, geojson_path: str, commune: str) -> Optional[ParcelSummary]:
        """Retrouve une parcelle par identifiant + code commune (navigation directe)"""
        for parcel in self._parcels:
            if parcel.geojson_path == geojson_path and parcel.commune == commune:
                return parcel
        return None

    def in_bbox(self, bbox: Any) -> List[ParcelSummary]:
        return in_bbox(self, bbox)

    @staticmethod
    def group_by_name(parcels: Iterable[ParcelSummary]) -> List[Dict[str, Any]]:
        """Groupe des parcelles par nom d'appellation (ordre de première apparition)"""
        grouped: Dict[str, List[ParcelSummary]] = {}
        for parcel in parcels:
            grouped.setdefault(parcel.nom, []).append(parcel)

        return [
            {"nom": nom, "count": len(items), "parcelles": items}
            for nom, items in grouped.items()
        ]


def build_catalog(raw_entries: Any) -> CatalogIndex:
    """
    Construit l'index en une seule passe linéaire.

    Raises:
        CatalogLoadError: si la source n'est pas une liste ou si une entrée
            n'a pas les champs requis.
    """
    if not isinstance(raw_entries, (list, tuple)):
        raise CatalogLoadError("Le catalogue doit contenir une liste de parcelles.")

    parcels: List[ParcelSummary] = []
    name_index: Dict[str, List[int]] = {}
    for position, raw in enumerate(raw_entries):
        parcel = ParcelSummary.from_dict(raw)
        parcels.append(parcel)
        name_index.setdefault(parcel.nom.lower(), []).append(position)

    return CatalogIndex(parcels, {k: tuple(v) for k, v in name_index.items()})


async def load_catalog(client: httpx.AsyncClient, url: str) -> CatalogIndex:
    """
    Télécharge le document d'index et construit le catalogue.

    Le paramètre `v` (horodatage en millisecondes) empêche un cache HTTP de
    servir une version périmée de l'index.
    """
    try:
        response = await client.get(url, params={"v": int(time.time() * 1000)})
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as exc:
        raise CatalogLoadError(
            f"Impossible de charger l'index des parcelles (HTTP {exc.response.status_code})."
        ) from exc
    except httpx.HTTPError as exc:
        raise CatalogLoadError(f"Impossible de charger l'index des parcelles : {exc}") from exc
    except ValueError as exc:
        raise CatalogLoadError(f"Index des parcelles illisible : {exc}") from exc

    if not isinstance(data, dict):
        raise CatalogLoadError("Le document d'index doit être un objet JSON.")

    catalog = build_catalog(data.get("parcelles") or [])
    logger.info("%d parcelles chargées depuis %s", len(catalog), url)
    return catalog


def validate_bbox(bbox: Any) -> BBox:
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4 or not all(_is_number(v) for v in bbox):
        raise QueryMalformedError(f"Emprise invalide : 4 nombres attendus, reçu {bbox!r}")
    min_lng, min_lat, max_lng, max_lat = (float(v) for v in bbox)
    if min_lng > max_lng or min_lat > max_lat:
        raise QueryMalformedError(f"Emprise non ordonnée : {bbox!r}")
    return min_lng, min_lat, max_lng, max_lat


def in_bbox(catalog: Optional[CatalogIndex], bbox: Any) -> List[ParcelSummary]:
    """
    Parcelles dont le centre est dans l'emprise [minLng, minLat, maxLng, maxLat]
    (bornes incluses). Retourne une liste vide si le catalogue n'est pas encore
    construit ou si l'emprise est mal formée.
    """
    if catalog is None:
        return []

    try:
        min_lng, min_lat, max_lng, max_lat = validate_bbox(bbox)
    except QueryMalformedError as exc:
        logger.debug("Requête d'emprise ignorée : %s", exc)
        return []

    return [
        parcel
        for parcel in catalog.all()
        if min_lng <= parcel.center[0] <= max_lng and min_lat <= parcel.center[1] <= max_lat
    ]
