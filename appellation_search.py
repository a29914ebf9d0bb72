"""
Recherche floue des appellations par nom
Trois passes (exacte, préfixe/sous-chaîne, tous les mots) fusionnées et dédoublonnées.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from parcel_catalog import CatalogIndex, ParcelSummary

MIN_QUERY_LENGTH = 2
DEFAULT_MAX_RESULTS = 20
DEFAULT_SUGGESTIONS = 8

SCORE_EXACT = 100
SCORE_PREFIX = 90
SCORE_SUBSTRING = 70
SCORE_ALL_WORDS = 50


@dataclass(frozen=True)
class NavigationTarget:
    """Parcelle choisie par l'utilisateur : identifiant GeoJSON + code commune"""

    geojson_path: str
    commune: str


@dataclass(frozen=True)
class SearchResult:
    parcel: ParcelSummary
    score: int

    def navigation_target(self) -> NavigationTarget:
        return NavigationTarget(self.parcel.geojson_path, self.parcel.commune)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.parcel.to_dict(), "score": self.score}


def normalize_query(query: Optional[str]) -> str:
    return (query or "").strip().lower()


def collation_key(name: str) -> Tuple[str, str]:
    """Clé de tri alphabétique insensible aux accents et à la casse"""
    decomposed = unicodedata.normalize("NFKD", name)
    base = "".join(c for c in decomposed if not unicodedata.combining(c))
    return base.casefold(), name


def search(catalog: Optional[CatalogIndex], query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[SearchResult]:
    """
    Recherche de parcelles par nom (avec fuzzy matching)

    Scores :
    - 100 : nom identique à la requête
    - 90 : le nom commence par la requête
    - 70 : le nom complet contient la requête
    - 50 : chaque mot de la requête apparaît dans le nom ou le nom complet

    Une parcelle retenue par une passe n'est pas reprise par les suivantes
    (clé de dédoublonnage : nom + commune).
    """
    normalized = normalize_query(query)
    if catalog is None or len(normalized) < MIN_QUERY_LENGTH:
        return []

    results: List[SearchResult] = []
    seen = set()

    def _keep(parcel: ParcelSummary, score: int) -> None:
        key = (parcel.nom, parcel.commune)
        if key not in seen:
            seen.add(key)
            results.append(SearchResult(parcel, score))

    # Recherche exacte en priorité
    for position in catalog.by_normalized_name(normalized):
        _keep(catalog.all()[position], SCORE_EXACT)

    # Correspondance partielle
    for parcel in catalog.all():
        nom = parcel.nom.lower()
        if nom.startswith(normalized):
            _keep(parcel, SCORE_PREFIX)
        elif normalized in parcel.nom_complet.lower():
            _keep(parcel, SCORE_SUBSTRING)

    # Tous les mots de la requête
    words = normalized.split()
    for parcel in catalog.all():
        nom = parcel.nom.lower()
        complet = parcel.nom_complet.lower()
        if all(word in nom or word in complet for word in words):
            _keep(parcel, SCORE_ALL_WORDS)

    results.sort(key=lambda r: (-r.score, collation_key(r.parcel.nom)))
    return results[:max_results]


def suggest(catalog: Optional[CatalogIndex], query: str, limit: int = DEFAULT_SUGGESTIONS) -> List[ParcelSummary]:
    """Suggestions d'autocomplétion : simple sous-chaîne, ordre du catalogue"""
    normalized = normalize_query(query)
    if catalog is None or len(normalized) < MIN_QUERY_LENGTH:
        return []

    return [
        parcel
        for parcel in catalog.all()
        if normalized in parcel.nom_complet.lower() or normalized in parcel.nom.lower()
    ][:limit]
