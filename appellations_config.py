"""
Configuration de la carte des appellations
Variables d'environnement, contexte explicite (MapContext) et journalisation.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional


# Configuration
DATA_BASE_URL = os.getenv("APPELLATIONS_DATA_URL", "http://localhost:8000")
INDEX_PATH = os.getenv("APPELLATIONS_INDEX_PATH", "data/parcelles-index.json")
MAPBOX_TOKEN = os.getenv("MAPBOX_TOKEN", "")
DETAIL_ZOOM = float(os.getenv("APPELLATIONS_DETAIL_ZOOM", "12"))
MAX_PARCELS = int(os.getenv("APPELLATIONS_MAX_PARCELS", "800"))
HTTP_TIMEOUT = float(os.getenv("APPELLATIONS_HTTP_TIMEOUT", "30.0"))
LOG_LEVEL = os.getenv("APPELLATIONS_LOG_LEVEL", "INFO")

# Vue initiale : centre de la Bourgogne
DEFAULT_CENTER = (4.8, 47.0)
DEFAULT_ZOOM = 9

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class MapContext:
    """Contexte de session : sources de données, jeton carto et seuils de chargement."""

    base_url: str = DATA_BASE_URL
    index_path: str = INDEX_PATH
    mapbox_token: str = MAPBOX_TOKEN
    detail_zoom: float = DETAIL_ZOOM
    max_parcels: int = MAX_PARCELS
    http_timeout: float = HTTP_TIMEOUT

    @classmethod
    def from_env(cls) -> "MapContext":
        return cls(
            base_url=os.getenv("APPELLATIONS_DATA_URL", DATA_BASE_URL),
            index_path=os.getenv("APPELLATIONS_INDEX_PATH", INDEX_PATH),
            mapbox_token=os.getenv("MAPBOX_TOKEN", MAPBOX_TOKEN),
            detail_zoom=float(os.getenv("APPELLATIONS_DETAIL_ZOOM", str(DETAIL_ZOOM))),
            max_parcels=int(os.getenv("APPELLATIONS_MAX_PARCELS", str(MAX_PARCELS))),
            http_timeout=float(os.getenv("APPELLATIONS_HTTP_TIMEOUT", str(HTTP_TIMEOUT))),
        )

    @property
    def index_url(self) -> str:
        return self.resolve(self.index_path)

    def resolve(self, path: str) -> str:
        """URL absolue d'un fichier de données (index ou GeoJSON de parcelle)"""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


def configure_logging(level: Optional[str] = None) -> None:
    """Journalisation sur stderr (stdout est réservé au transport MCP stdio)"""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
