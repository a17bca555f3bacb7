"""
Vistas tipadas sobre los payloads JSON de AEMET

El cliente devuelve las respuestas tal cual (listas de dicts con forma distinta
según el endpoint). Este módulo ofrece accesores por categoría para quien
necesite trabajar con tipos concretos o con un DataFrame.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from aemet_utils import station_coordinates, station_id
from config import NORMALS_PERIOD

OBSERVATION_VARIABLES = [
    "ta",         # Temperatura (°C)
    "tamax",
    "tamin",
    "hr",         # Humedad relativa (%)
    "prec",       # Precipitación (mm)
    "vv",         # Velocidad del viento (m/s)
    "dv",         # Dirección del viento (grados)
    "vmax",       # Racha máxima (m/s)
    "dmax",
    "pres",       # Presión a nivel de estación (hPa)
    "pres_nmar",  # Presión a nivel del mar (hPa)
    "tpr",        # Punto de rocío (°C)
    "vis",
    "inso",
    "nieve",
]

CLIMATE_DAILY_VARIABLES = [
    "tmed",
    "tmax",
    "tmin",
    "prec",
    "velmedia",
    "racha",
    "dir",
    "sol",
    "presMax",
    "presMin",
    "hrMedia",
    "hrMax",
    "hrMin",
]

# Campos de normales que no son valores numéricos
_NORMAL_META_FIELDS = {"indicativo", "idema", "nombre", "provincia", "mes", "altitud"}


@dataclass(frozen=True)
class Station:
    station_id: str
    name: str
    province: Optional[str]
    raw_lat: str
    raw_lon: str
    lat: float
    lon: float
    altitude: float = float("nan")


@dataclass(frozen=True)
class Observation:
    station_id: str
    timestamp: Optional[datetime]
    values: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ClimateRecord:
    station_id: str
    date: date
    values: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ClimateNormal:
    station_id: str
    month: Optional[int]
    period: str = NORMALS_PERIOD
    values: Dict[str, float] = field(default_factory=dict)


def _parse_num(value) -> float:
    """Parseo robusto de números AEMET (coma decimal, vacíos, 'Ip', paréntesis…).

    AEMET devuelve campos como ta_max='37.4(27)' o q_min='984.2(09/nov)'
    donde el paréntesis indica el día de ocurrencia. Solo se extrae la parte numérica.
    """
    if value is None or isinstance(value, bool):
        return float("nan")
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    paren_idx = s.find("(")
    if paren_idx > 0:
        s = s[:paren_idx].strip()
    s = s.replace(",", ".")
    if not s or s.lower() in {"ip", "nan", "none", "--", "-", "acum", "varias"}:
        return float("nan")
    try:
        return float(s)
    except ValueError:
        return float("nan")


def _parse_precip(value: Any) -> float:
    # 'Ip' = precipitación inapreciable
    if value is not None and str(value).strip().lower() == "ip":
        return 0.0
    return _parse_num(value)


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parsea timestamps AEMET ('2024-01-15T10:00:00', '...+0000', '...UTC') a UTC."""
    if not raw:
        return None
    clean = str(raw).strip().replace("UTC", "").replace("Z", "").strip()
    clean = re.sub(r'([+-])(\d{2})(\d{2})$', r'\1\2:\3', clean)
    try:
        dt = datetime.fromisoformat(clean)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_date(raw: Any) -> Optional[date]:
    if raw is None:
        return None
    text = str(raw).strip()
    if len(text) < 10:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _first_non_empty(record: Dict[str, Any], keys: List[str]):
    """Devuelve el primer campo no vacío ignorando mayúsculas/minúsculas."""
    record_ci = {str(k).lower(): v for k, v in record.items()}
    for key in keys:
        value = record.get(key)
        if value is None:
            value = record_ci.get(key.lower())
        if value is not None and value != "":
            return value
    return None


def station_from_record(record: Dict[str, Any]) -> Optional[Station]:
    """Estación del inventario; None si no tiene ID o coordenadas válidas."""
    sid = station_id(record)
    coords = station_coordinates(record)
    if not sid or coords is None:
        return None

    raw_lat = record.get("latitud", record.get("lat"))
    raw_lon = record.get("longitud", record.get("lon"))
    return Station(
        station_id=sid,
        name=str(record.get("nombre") or record.get("ubi") or "Station").strip(),
        province=record.get("provincia"),
        raw_lat=str(raw_lat),
        raw_lon=str(raw_lon),
        lat=coords[0],
        lon=coords[1],
        altitude=_parse_num(_first_non_empty(record, ["altitud", "alt"])),
    )


def stations_from_payload(payload: Iterable[Dict[str, Any]]) -> List[Station]:
    stations = []
    for record in payload or []:
        if not isinstance(record, dict):
            continue
        station = station_from_record(record)
        if station is not None:
            stations.append(station)
    return stations


def observations_from_payload(payload: Iterable[Dict[str, Any]]) -> List[Observation]:
    """Observaciones convencionales (todas o de una estación)."""
    observations = []
    for record in payload or []:
        if not isinstance(record, dict):
            continue
        sid = station_id(record)
        if not sid:
            continue

        values = {}
        for var in OBSERVATION_VARIABLES:
            if var in record:
                values[var] = _parse_precip(record[var]) if var == "prec" else _parse_num(record[var])

        observations.append(
            Observation(
                station_id=sid,
                timestamp=_parse_timestamp(_first_non_empty(record, ["fint", "fecha", "fhora"])),
                values=values,
            )
        )
    return observations


def climate_records_from_payload(payload: Iterable[Dict[str, Any]]) -> List[ClimateRecord]:
    """Valores climatológicos diarios; se descartan registros sin fecha válida."""
    records = []
    for record in payload or []:
        if not isinstance(record, dict):
            continue
        sid = station_id(record)
        day = _parse_date(record.get("fecha"))
        if not sid or day is None:
            continue

        values = {}
        for var in CLIMATE_DAILY_VARIABLES:
            if var in record:
                values[var] = _parse_precip(record[var]) if var == "prec" else _parse_num(record[var])

        records.append(ClimateRecord(station_id=sid, date=day, values=values))
    return records


def climate_normals_from_payload(payload: Iterable[Dict[str, Any]]) -> List[ClimateNormal]:
    """Normales climatológicas 1991-2020; mes 13 es el resumen anual."""
    normals = []
    for record in payload or []:
        if not isinstance(record, dict):
            continue
        sid = station_id(record)
        if not sid:
            continue

        month_num = _parse_num(record.get("mes"))
        month = int(month_num) if month_num == month_num else None

        values = {}
        for key, raw in record.items():
            if key in _NORMAL_META_FIELDS:
                continue
            num = _parse_num(raw)
            if num == num:
                values[key] = num

        normals.append(ClimateNormal(station_id=sid, month=month, values=values))
    return normals


def climate_records_to_dataframe(records: List[ClimateRecord]) -> pd.DataFrame:
    """
    Tabla diaria: una fila por (estación, fecha), columnas = variables

    Los días duplicados se quedan con el último registro recibido.
    """
    columns = ["station_id", "date"] + CLIMATE_DAILY_VARIABLES
    if not records:
        return pd.DataFrame(columns=columns)

    frame = pd.DataFrame(
        [{"station_id": r.station_id, "date": r.date, **r.values} for r in records]
    )
    frame["date"] = pd.to_datetime(frame["date"], errors="coerce").dt.normalize()
    frame = frame.dropna(subset=["date"]).copy()

    for col in CLIMATE_DAILY_VARIABLES:
        if col not in frame.columns:
            frame[col] = float("nan")
        frame[col] = pd.to_numeric(frame[col], errors="coerce")
    frame["prec"] = frame["prec"].clip(lower=0)

    frame = (
        frame.drop_duplicates(subset=["station_id", "date"], keep="last")
        .sort_values(["station_id", "date"])
        .reset_index(drop=True)
    )
    return frame[columns]


__all__ = [
    "Station",
    "Observation",
    "ClimateRecord",
    "ClimateNormal",
    "station_from_record",
    "stations_from_payload",
    "observations_from_payload",
    "climate_records_from_payload",
    "climate_normals_from_payload",
    "climate_records_to_dataframe",
]
