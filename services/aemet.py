"""
Servicio para interactuar con AEMET OpenData API

Superficie pública para el resto de la aplicación: estaciones, observaciones
recientes, climatologías diarias, normales y estación más cercana. Todo pasa
por la caché (TTL por categoría) antes de tocar la red.
"""
import logging
import threading
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import requests

import aemet_utils
from api.aemet_opendata import AemetFetcher, AttemptObserver
from config import (
    CACHE_HISTORICAL,
    CACHE_RECENT,
    CACHE_STATIONS,
    AemetSettings,
    load_settings,
)
from utils.cache import CacheLayer, CacheStore, build_cache_key

logger = logging.getLogger(__name__)

DateLike = Union[str, date]

ENDPOINT_STATIONS = "/api/valores/climatologicos/inventarioestaciones/todasestaciones"
ENDPOINT_RECENT = "/api/observacion/convencional/todas"
ENDPOINT_STATION_OBSERVATIONS = "/api/observacion/convencional/datos/estacion/{station_id}"
ENDPOINT_DAILY_CLIMATE = (
    "/api/valores/climatologicos/diarios/datos/"
    "fechaini/{start}/fechafin/{end}/estacion/{station_id}"
)
ENDPOINT_NORMALS = "/api/valores/climatologicos/normales/estacion/{station_id}"


def format_date_for_api(value: DateLike) -> str:
    """
    Formatea una fecha para AEMET (YYYY-MM-DDTHH:MM:SSUTC)

    "2024-01-01"              → "2024-01-01T00:00:00UTC"
    date(2024, 1, 1)          → "2024-01-01T00:00:00UTC"
    "2024-01-01T12:00:00UTC"  → sin cambios
    """
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SUTC")
    if isinstance(value, date):
        return f"{value.strftime('%Y-%m-%d')}T00:00:00UTC"

    raw = str(value).strip()
    if "T" in raw and "UTC" in raw:
        return raw
    return f"{raw}T00:00:00UTC"


class AemetClient:
    """Cliente de datos meteorológicos AEMET con caché y reintentos."""

    def __init__(
        self,
        settings: AemetSettings,
        cache_store: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
        observer: Optional[AttemptObserver] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings
        self.fetcher = AemetFetcher(
            api_key=settings.api_key,
            base_url=settings.base_url,
            max_retries=settings.max_retries,
            base_delay_ms=settings.base_delay_ms,
            metadata_timeout=settings.metadata_timeout,
            data_timeout=settings.data_timeout,
            session=session,
            observer=observer,
            sleep=sleep,
        )
        cache_kwargs = {"store": cache_store, "ttls": settings.cache_ttls}
        if clock is not None:
            cache_kwargs["clock"] = clock
        self.cache = CacheLayer(**cache_kwargs)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **kwargs) -> "AemetClient":
        """Construye el cliente desde variables de entorno (AEMET_API_KEY, ...)."""
        return cls(load_settings(env), **kwargs)

    def _cached_fetch(
        self,
        key: str,
        category: str,
        endpoint: str,
        label: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        return self.cache.get_or_fetch(
            key,
            category,
            lambda: self.fetcher.fetch(endpoint, label=label, cancel_event=cancel_event),
        )

    def get_all_stations(self, cancel_event: Optional[threading.Event] = None) -> List[Dict]:
        """Inventario completo de estaciones climatológicas."""
        return self._cached_fetch(
            build_cache_key("stations_all"),
            CACHE_STATIONS,
            ENDPOINT_STATIONS,
            "stations",
            cancel_event,
        )

    def get_recent_observations(self, cancel_event: Optional[threading.Event] = None) -> List[Dict]:
        """Observaciones de las últimas 24 h de todas las estaciones."""
        return self._cached_fetch(
            build_cache_key("recent_observations"),
            CACHE_RECENT,
            ENDPOINT_RECENT,
            "recent",
            cancel_event,
        )

    def get_station_observations(
        self, station_id: str, cancel_event: Optional[threading.Event] = None
    ) -> List[Dict]:
        """
        Observaciones recientes de una estación

        Args:
            station_id: ID de la estación (ej: "3195")
        """
        return self._cached_fetch(
            build_cache_key("station_observations", station_id),
            CACHE_RECENT,
            ENDPOINT_STATION_OBSERVATIONS.format(station_id=station_id),
            f"station:{station_id}",
            cancel_event,
        )

    def get_daily_climate_data(
        self,
        station_id: str,
        start_date: DateLike,
        end_date: DateLike,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Dict]:
        """
        Valores climatológicos diarios de una estación en un rango de fechas

        start_date <= end_date es responsabilidad del llamante.

        Args:
            station_id: ID de la estación
            start_date: "YYYY-MM-DD", date o fecha ya en formato AEMET
            end_date: Igual que start_date
        """
        start = format_date_for_api(start_date)
        end = format_date_for_api(end_date)
        return self._cached_fetch(
            build_cache_key("daily_climate", station_id, start, end),
            CACHE_HISTORICAL,
            ENDPOINT_DAILY_CLIMATE.format(start=start, end=end, station_id=station_id),
            f"climo_daily:{station_id}",
            cancel_event,
        )

    def get_climate_normals(
        self, station_id: str, cancel_event: Optional[threading.Event] = None
    ) -> List[Dict]:
        """Normales climatológicas (1991-2020) de una estación."""
        return self._cached_fetch(
            build_cache_key("climate_normals", station_id),
            CACHE_HISTORICAL,
            ENDPOINT_NORMALS.format(station_id=station_id),
            f"normals:{station_id}",
            cancel_event,
        )

    def find_nearest_station(
        self, latitude: float, longitude: float, cancel_event: Optional[threading.Event] = None
    ) -> Optional[Dict]:
        """
        Estación más cercana a unas coordenadas

        El rango lat/lon lo valida el llamante. Usa el inventario cacheado;
        no hace peticiones propias.

        Returns:
            Estación con 'distance_km' o None si ninguna tiene coordenadas válidas
        """
        stations = self.get_all_stations(cancel_event=cancel_event)
        nearest = aemet_utils.find_nearest_station(latitude, longitude, stations or [])
        if nearest is None:
            logger.info(f"Sin estación con coordenadas válidas cerca de ({latitude}, {longitude})")
        return nearest

    @staticmethod
    def parse_coordinate(coordinate: Any) -> float:
        return aemet_utils.parse_coordinate(coordinate)
