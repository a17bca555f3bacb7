"""
Utilidades para trabajar con estaciones AEMET
"""
import json
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from config import EARTH_RADIUS_KM

# 40°25'00"N (no anclado: AEMET a veces añade espacios o texto alrededor)
_DMS_VERBOSE = re.compile(r"(\d+)°(\d+)'(\d+)\"([NSEW])")
# 394924N / 0025309W
_DMS_COMPACT = re.compile(r"^(\d{2,3})(\d{2})(\d{2})([NSEW])$")
_DECIMAL = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")


def _dms_to_decimal(degrees: str, minutes: str, seconds: str, direction: str) -> float:
    decimal = float(degrees) + float(minutes) / 60 + float(seconds) / 3600
    # S y W son negativos
    if direction in ("S", "W"):
        decimal *= -1
    return decimal


def parse_coordinate(coordinate: Any) -> float:
    """
    Convierte una coordenada AEMET a grados decimales

    Formatos aceptados:
        "40.4167"     → 40.4167
        "40°25'00\"N" → 40.41666...
        "025309E"     → 2.8858...

    Cualquier otro formato devuelve 0.0, que los llamantes tratan como
    coordenada inválida (aunque 0.0 también sea un valor real en el ecuador
    o el meridiano de Greenwich).
    """
    if coordinate is None:
        return 0.0
    if isinstance(coordinate, (int, float)) and not isinstance(coordinate, bool):
        return float(coordinate)

    raw = str(coordinate)
    if _DECIMAL.match(raw):
        return float(raw)

    match = _DMS_VERBOSE.search(raw)
    if match:
        return _dms_to_decimal(*match.groups())

    match = _DMS_COMPACT.match(raw)
    if match:
        return _dms_to_decimal(*match.groups())

    return 0.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calcula distancia en km entre dos coordenadas usando fórmula de Haversine

    Args:
        lat1, lon1: Coordenadas del primer punto
        lat2, lon2: Coordenadas del segundo punto

    Returns:
        Distancia en kilómetros
    """
    # Convertir a radianes
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    # Diferencias
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    # Fórmula de Haversine
    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def station_id(station: Dict) -> Optional[str]:
    """ID de la estación: 'idema' (observaciones) o 'indicativo' (inventario)."""
    value = station.get("idema") or station.get("indicativo")
    return str(value) if value else None


def station_coordinates(station: Dict) -> Optional[Tuple[float, float]]:
    """
    Coordenadas decimales de una estación, o None si no son válidas

    Acepta el inventario crudo de AEMET ('latitud'/'longitud' en DMS) y el
    inventario ya procesado ('lat'/'lon' decimales).
    """
    raw_lat = station.get("latitud", station.get("lat"))
    raw_lon = station.get("longitud", station.get("lon"))
    if raw_lat is None or raw_lon is None:
        return None

    lat = parse_coordinate(raw_lat)
    lon = parse_coordinate(raw_lon)

    # 0.0 indica que el parseo falló
    if lat == 0.0 or lon == 0.0:
        return None
    return lat, lon


def load_stations(filepath: str = 'estaciones_aemet.json') -> List[Dict]:
    """
    Carga el inventario de estaciones desde JSON

    Args:
        filepath: Ruta al archivo JSON

    Returns:
        Lista de estaciones
    """
    with open(filepath, 'r', encoding='utf-8') as f:
        data = json.load(f)

    return data['estaciones']


def find_nearest_station(lat: float, lon: float, stations: List[Dict]) -> Optional[Dict]:
    """
    Encuentra la estación más cercana a una ubicación

    Recorre todas las estaciones con coordenadas válidas; en caso de empate
    gana la primera encontrada.

    Args:
        lat, lon: Coordenadas de búsqueda
        stations: Lista de estaciones (inventario AEMET)

    Returns:
        Copia de la estación con 'distance_km' (2 decimales), o None
    """
    nearest = None
    min_distance = math.inf

    for station in stations:
        if not isinstance(station, dict):
            continue
        coords = station_coordinates(station)
        if coords is None:
            continue

        distance = haversine_distance(lat, lon, coords[0], coords[1])
        if distance < min_distance:
            min_distance = distance
            nearest = station

    if nearest is None:
        return None

    result = dict(nearest)
    result['distance_km'] = round(min_distance, 2)
    return result


def find_nearest_stations(lat: float, lon: float, stations: List[Dict],
                          max_results: int = 5, max_distance_km: float = None) -> List[Tuple[Dict, float]]:
    """
    Encuentra las estaciones más cercanas a una ubicación

    Args:
        lat, lon: Coordenadas de búsqueda
        stations: Lista de estaciones
        max_results: Número máximo de resultados
        max_distance_km: Distancia máxima en km (None = sin límite)

    Returns:
        Lista de tuplas (estación, distancia_km) ordenadas por distancia
    """
    results = []

    for station in stations:
        if not isinstance(station, dict):
            continue
        coords = station_coordinates(station)
        if coords is None:
            continue

        distance = haversine_distance(lat, lon, coords[0], coords[1])

        # Filtrar por distancia máxima si se especifica
        if max_distance_km is not None and distance > max_distance_km:
            continue

        results.append((station, distance))

    # Ordenar por distancia (sort estable: empates en orden de aparición)
    results.sort(key=lambda x: x[1])

    return results[:max_results]


def find_station_by_id(idema: str, stations: List[Dict]) -> Optional[Dict]:
    """
    Busca una estación por su ID

    Args:
        idema: ID de la estación (ej: "0201X")
        stations: Lista de estaciones

    Returns:
        Diccionario con datos de la estación o None si no existe
    """
    for station in stations:
        if station_id(station) == idema:
            return station
    return None


def search_stations_by_name(query: str, stations: List[Dict], max_results: int = 10) -> List[Dict]:
    """
    Busca estaciones por nombre (búsqueda parcial, case-insensitive)

    Args:
        query: Texto a buscar
        stations: Lista de estaciones
        max_results: Número máximo de resultados

    Returns:
        Lista de estaciones que coinciden
    """
    query_lower = query.lower()
    results = []

    for station in stations:
        nombre = str(station.get('nombre') or station.get('ubi') or '').lower()
        if query_lower in nombre:
            results.append(station)

            if len(results) >= max_results:
                break

    return results


def filter_stations_by_province(province: str, stations: List[Dict]) -> List[Dict]:
    """
    Filtra estaciones por provincia

    Args:
        province: Nombre de la provincia
        stations: Lista de estaciones

    Returns:
        Lista de estaciones en esa provincia
    """
    province_lower = province.lower()
    return [
        s for s in stations
        if str(s.get('provincia') or '').lower() == province_lower
    ]
