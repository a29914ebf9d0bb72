#!/usr/bin/env python3
"""
Serveur MCP pour la carte des appellations
- Recherche floue des appellations (score exact / préfixe / mots)
- Requêtes d'emprise sur le catalogue des parcelles
- Chargement des géométries du viewport (cache de session)
"""

import asyncio
import json
from typing import Any, Dict, List

import httpx
from mcp.server import Server
from mcp.types import Tool, TextContent
import mcp.server.stdio

from appellation_search import NavigationTarget, search, suggest
from appellations_config import MapContext, configure_logging
from geometry_cache import GeometryCache, GeometryFetchError, features_bounds
from parcel_catalog import CatalogIndex, in_bbox, load_catalog
from viewport_controller import ParcelNotFoundError, ViewportController, ViewportStatus


def _json(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False, indent=2))]


def _feature_digest(feature: Dict[str, Any]) -> Dict[str, Any]:
    # Les coordonnées complètes saturent le contexte : on ne renvoie que l'essentiel
    props = feature.get("properties", {})
    return {
        "geojsonPath": props.get("geojsonPath"),
        "nom": props.get("nom"),
        "nomComplet": props.get("nomComplet"),
        "communeNom": props.get("communeNom"),
        "color": props.get("color"),
        "geometry_type": (feature.get("geometry") or {}).get("type"),
    }


class MapSession:
    """Catalogue, cache et contrôleur d'une session du serveur"""

    def __init__(self, catalog: CatalogIndex, client: httpx.AsyncClient, context: MapContext):
        self.context = context
        self.cache = GeometryCache(client, context)
        self.last_polygons: List[Dict[str, Any]] = []
        self.controller = ViewportController(
            catalog,
            self.cache,
            context,
            render_polygons=self._capture,
        )

    def _capture(self, features: List[Dict[str, Any]]) -> None:
        self.last_polygons = features

    @property
    def catalog(self) -> CatalogIndex:
        return self.controller.catalog


async def _execute_tool_logic(name: str, arguments: Any, session: MapSession) -> list[TextContent]:
    if name == "search_appellations":
        results = search(session.catalog, arguments["query"], arguments.get("max_results", 20))
        return _json({"total": len(results), "results": [r.to_dict() for r in results]})

    elif name == "suggest_appellations":
        parcels = suggest(session.catalog, arguments["query"], arguments.get("limit", 8))
        return _json({"suggestions": [p.to_dict() for p in parcels]})

    elif name == "get_parcels_in_bbox":
        parcels = in_bbox(session.catalog, arguments["bbox"])
        return _json({
            "count": len(parcels),
            "groups": [
                {"nom": g["nom"], "count": g["count"], "communes": sorted({p.commune_nom for p in g["parcelles"]})}
                for g in session.catalog.group_by_name(parcels)
            ],
        })

    elif name == "load_viewport":
        outcome = await session.controller.on_viewport_settled(arguments["bbox"], arguments["zoom"])
        result = {
            "status": outcome.status.value,
            "parcels_in_view": outcome.parcels_in_view,
            "rendered": outcome.rendered,
            "features": [],
            "bounds": None,
        }
        if outcome.status is ViewportStatus.RENDERED:
            result["features"] = [_feature_digest(f) for f in session.last_polygons]
            result["bounds"] = features_bounds(session.last_polygons)
        return _json(result)

    elif name == "get_parcel_geometry":
        target = NavigationTarget(arguments["geojson_path"], arguments["commune"])
        view = await session.controller.show_parcel(target)
        return _json({
            "nomComplet": view["parcel"].nom_complet,
            "communeNom": view["commune_nom"],
            "departement": view["parcel"].departement,
            "bounds": view["bounds"],
            "feature": view["record"],
        })

    elif name == "get_catalog_stats":
        catalog = session.catalog
        return _json({
            "parcels_count": len(catalog),
            "appellations_count": len({p.nom for p in catalog}),
            "cached_geometries": session.cache.cached_count,
            "visible_geometries": len(session.cache.visible_ids),
            "detail_zoom": session.context.detail_zoom,
            "max_parcels": session.context.max_parcels,
        })

    raise ValueError(f"Outil inconnu : {name}")


def create_server(session: MapSession) -> Server:
    app = Server("appellations-map-mcp")

    @app.list_tools()
    async def list_tools() -> list[Tool]:
        """Liste tous les outils disponibles"""
        return [
            Tool(
                name="search_appellations",
                description="Rechercher des parcelles d'appellation par nom (exact, préfixe, tous les mots)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Nom ou partie du nom (2 caractères minimum)"},
                        "max_results": {"type": "integer", "default": 20, "description": "Nombre max de résultats"},
                    },
                    "required": ["query"],
                },
            ),
            Tool(
                name="suggest_appellations",
                description="Suggestions d'autocomplétion (nom ou nom complet contenant la saisie)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Saisie en cours"},
                        "limit": {"type": "integer", "default": 8, "description": "Nombre de suggestions"},
                    },
                    "required": ["query"],
                },
            ),
            Tool(
                name="get_parcels_in_bbox",
                description="Parcelles dont le centre est dans l'emprise, groupées par appellation",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "bbox": {
                            "type": "array",
                            "items": {"type": "number"},
                            "minItems": 4,
                            "maxItems": 4,
                            "description": "[minLng, minLat, maxLng, maxLat]",
                        },
                    },
                    "required": ["bbox"],
                },
            ),
            Tool(
                name="load_viewport",
                description="Charger les polygones des parcelles visibles (zoom >= seuil de détail)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "bbox": {
                            "type": "array",
                            "items": {"type": "number"},
                            "minItems": 4,
                            "maxItems": 4,
                            "description": "[minLng, minLat, maxLng, maxLat]",
                        },
                        "zoom": {"type": "number", "description": "Niveau de zoom de la carte"},
                    },
                    "required": ["bbox", "zoom"],
                },
            ),
            Tool(
                name="get_parcel_geometry",
                description="Géométrie complète d'une parcelle (identifiant GeoJSON + code commune)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "geojson_path": {"type": "string", "description": "Chemin GeoJSON de la parcelle"},
                        "commune": {"type": "string", "description": "Code INSEE de la commune"},
                    },
                    "required": ["geojson_path", "commune"],
                },
            ),
            Tool(
                name="get_catalog_stats",
                description="Statistiques du catalogue et du cache de géométries",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    @app.call_tool()
    async def call_tool(name: str, arguments: Any) -> list[TextContent]:
        """Exécute un outil"""
        try:
            return await _execute_tool_logic(name, arguments or {}, session)
        except ParcelNotFoundError as exc:
            return _json({"error": str(exc)})
        except GeometryFetchError as exc:
            return _json({"error": "Géométrie indisponible", "detail": str(exc)})
        except (KeyError, ValueError) as exc:
            return _json({"error": f"Paramètre invalide : {exc}"})

    return app


async def main():
    """Point d'entrée principal"""
    configure_logging()
    context = MapContext.from_env()

    async with httpx.AsyncClient(timeout=context.http_timeout) as client:
        catalog = await load_catalog(client, context.index_url)
        app = create_server(MapSession(catalog, client, context))
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
