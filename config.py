"""
Configuración global del cliente AEMET OpenData
"""
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from aemet_errors import ConfigurationError

# ============================================================
# API AEMET OPENDATA
# ============================================================
AEMET_BASE_URL = "https://opendata.aemet.es/opendata"
AEMET_METADATA_TIMEOUT_SECONDS = 20
AEMET_DATA_TIMEOUT_SECONDS = 60  # El servidor de datos es LENTO

# ============================================================
# REINTENTOS (429 / 5xx)
# ============================================================
MAX_RETRIES = 3  # Reintentos además del primer intento
BASE_DELAY_MS = 500  # Base del backoff exponencial
JITTER_MIN = 0.8
JITTER_MAX = 1.2

# ============================================================
# CACHE (segundos por categoría)
# ============================================================
CACHE_STATIONS = "stations"
CACHE_RECENT = "recent_data"
CACHE_HISTORICAL = "historical_data"

DEFAULT_CACHE_TTLS = {
    CACHE_STATIONS: 86400,  # 24 h inventario de estaciones
    CACHE_RECENT: 3600,  # 1 h observaciones recientes
    CACHE_HISTORICAL: 604800,  # 7 días climatologías y normales
}
MAX_CACHE_ENTRIES = 1000  # Límite del almacén en memoria

# ============================================================
# DIAGNÓSTICO
# ============================================================
BODY_PREVIEW_CHARS = 500

# ============================================================
# GEO
# ============================================================
EARTH_RADIUS_KM = 6371.0
NORMALS_PERIOD = "1991-2020"


@dataclass(frozen=True)
class AemetSettings:
    """Parámetros del cliente. Todos configurables desde fuera."""
    api_key: str = ""
    base_url: str = AEMET_BASE_URL
    cache_ttls: Mapping[str, int] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_CACHE_TTLS)))
    max_retries: int = MAX_RETRIES
    base_delay_ms: int = BASE_DELAY_MS
    metadata_timeout: float = AEMET_METADATA_TIMEOUT_SECONDS
    data_timeout: float = AEMET_DATA_TIMEOUT_SECONDS

    def __post_init__(self):
        # Copia de solo lectura: los TTL no cambian tras construir el cliente
        object.__setattr__(self, "cache_ttls", MappingProxyType(dict(self.cache_ttls)))


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = str(env.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} debe ser un entero (recibido: {raw!r})")
    if value < 0:
        raise ConfigurationError(f"{name} no puede ser negativo (recibido: {value})")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> AemetSettings:
    """
    Construye AemetSettings desde variables de entorno

    AEMET_CACHE_TTL sobrescribe todas las categorías a la vez; las variables
    específicas (AEMET_CACHE_TTL_STATIONS, _RECENT, _HISTORICAL) tienen prioridad.

    Args:
        env: Mapa de variables (por defecto os.environ)

    Returns:
        AemetSettings
    """
    if env is None:
        env = os.environ

    global_ttl = _env_int(env, "AEMET_CACHE_TTL", -1)
    ttls = dict(DEFAULT_CACHE_TTLS)
    if global_ttl >= 0:
        ttls = {category: global_ttl for category in ttls}

    per_category = {
        CACHE_STATIONS: "AEMET_CACHE_TTL_STATIONS",
        CACHE_RECENT: "AEMET_CACHE_TTL_RECENT",
        CACHE_HISTORICAL: "AEMET_CACHE_TTL_HISTORICAL",
    }
    for category, var in per_category.items():
        ttls[category] = _env_int(env, var, ttls[category])

    base_url = str(env.get("AEMET_BASE_URL", "") or "").strip() or AEMET_BASE_URL

    return AemetSettings(
        api_key=str(env.get("AEMET_API_KEY", "") or "").strip(),
        base_url=base_url.rstrip("/"),
        cache_ttls=ttls,
        max_retries=_env_int(env, "AEMET_MAX_RETRIES", MAX_RETRIES),
        base_delay_ms=_env_int(env, "AEMET_BASE_DELAY_MS", BASE_DELAY_MS),
    )
