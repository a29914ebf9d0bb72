#!/usr/bin/env python3
"""
Maintenance de l'index des parcelles
Recalcule emprise et centre depuis les fichiers GeoJSON d'un dossier de
délimitation et met à jour l'index (clé : geojsonPath).

Le centre est la moyenne des sommets (pas un centroïde pondéré par l'aire) :
c'est la valeur déjà stockée pour toutes les parcelles existantes.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from appellations_config import configure_logging

logger = logging.getLogger(__name__)

SKIPPED_FILES = {"cadastre-parcelles.json"}


class GeometryDerivationError(ValueError):
    """Géométrie sans coordonnées exploitables."""


def _exterior_coordinates(geometry: Dict[str, Any]) -> List[List[float]]:
    geom_type = geometry.get("type")
    if geom_type == "Polygon":
        return list(geometry["coordinates"][0])
    if geom_type == "MultiPolygon":
        coords: List[List[float]] = []
        for polygon in geometry["coordinates"]:
            coords.extend(polygon[0])
        return coords
    return []


def bbox_and_center(geometry: Dict[str, Any]) -> Dict[str, List[float]]:
    """Emprise (min/max par axe) et centre (moyenne des sommets) des anneaux extérieurs"""
    coords = _exterior_coordinates(geometry)
    if not coords:
        raise GeometryDerivationError(f"Aucune coordonnée pour une géométrie {geometry.get('type')!r}")

    lngs = [c[0] for c in coords]
    lats = [c[1] for c in coords]
    return {
        "bbox": [min(lngs), min(lats), max(lngs), max(lats)],
        "center": [sum(lngs) / len(coords), sum(lats) / len(coords)],
    }


def summary_from_feature(feature: Dict[str, Any], geojson_path: str, departement: str) -> Dict[str, Any]:
    props = feature.get("properties") or {}
    derived = bbox_and_center(feature["geometry"])
    return {
        "nom": props.get("app"),
        "nomComplet": props.get("denom") or props.get("app"),
        "commune": props.get("insee"),
        "communeNom": props.get("nomcom"),
        "departement": departement,
        "geojsonPath": geojson_path,
        "center": derived["center"],
        "bbox": derived["bbox"],
    }


def scan_directory(directory: Path, relative_base: str, departement: str) -> List[Dict[str, Any]]:
    entries = []
    for path in sorted(directory.iterdir()):
        if path.suffix != ".geojson" or path.name in SKIPPED_FILES:
            continue

        content = json.loads(path.read_text(encoding="utf-8"))
        features = content.get("features") or []
        if not features:
            logger.info("Fichier sans entité ignoré : %s", path.name)
            continue

        geojson_path = f"{relative_base.rstrip('/')}/{path.name}"
        try:
            entries.append(summary_from_feature(features[0], geojson_path, departement))
        except GeometryDerivationError as exc:
            logger.warning("%s ignoré : %s", path.name, exc)
    return entries


def upsert_entries(catalog_doc: Dict[str, Any], entries: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """Remplace les entrées de même geojsonPath, ajoute les nouvelles. Retourne (ajoutées, mises à jour)."""
    parcelles = catalog_doc.setdefault("parcelles", [])
    positions = {entry.get("geojsonPath"): i for i, entry in enumerate(parcelles)}

    added = updated = 0
    for entry in entries:
        position = positions.get(entry["geojsonPath"])
        if position is None:
            positions[entry["geojsonPath"]] = len(parcelles)
            parcelles.append(entry)
            added += 1
        else:
            parcelles[position] = entry
            updated += 1

    catalog_doc["totalParcelles"] = len(parcelles)
    return added, updated


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Met à jour l'index des parcelles depuis un dossier GeoJSON")
    parser.add_argument("directory", type=Path, help="Dossier des fichiers .geojson d'une commune")
    parser.add_argument("index_file", type=Path, help="Fichier parcelles-index.json à mettre à jour")
    parser.add_argument("--relative-base", required=True, help="Préfixe geojsonPath (ex: delimitation_aoc/21/21464)")
    parser.add_argument("--departement", default="21", help="Code département (défaut: 21)")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    catalog_doc = json.loads(args.index_file.read_text(encoding="utf-8"))
    entries = scan_directory(args.directory, args.relative_base, args.departement)
    added, updated = upsert_entries(catalog_doc, entries)

    args.index_file.write_text(json.dumps(catalog_doc, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("%d parcelles ajoutées, %d mises à jour dans %s", added, updated, args.index_file)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
