#!/usr/bin/env python3
"""
Script para construir inventario de estaciones AEMET

Descarga el inventario climatológico completo a través de AemetClient
(reintentos, backoff y corrección de encoding incluidos) y lo guarda en JSON
con coordenadas ya convertidas a grados decimales.
"""
import argparse
import json
import logging
import os
import sys
import time
from typing import Dict, List, Optional

from aemet_errors import AemetError
from aemet_utils import find_nearest_stations, station_coordinates, station_id
from config import AEMET_BASE_URL, load_settings
from services.aemet import AemetClient

logger = logging.getLogger("build_aemet_inventory")


def extract_station_info(raw_data: List[Dict]) -> List[Dict]:
    """Extrae información relevante de cada estación"""
    stations = []

    for item in raw_data:
        if not isinstance(item, dict):
            continue
        sid = station_id(item)
        coords = station_coordinates(item)

        # Validar campos mínimos
        if not sid or coords is None:
            continue

        stations.append({
            "idema": sid,
            "nombre": str(item.get("nombre") or item.get("ubi") or "").strip(),
            "provincia": str(item.get("provincia") or "").strip(),
            "lat": coords[0],
            "lon": coords[1],
            "alt": item.get("altitud", item.get("alt")),
        })

    return stations


def save_inventory(stations: List[Dict], filename: str = "estaciones_aemet.json") -> Dict:
    """Guarda el inventario en JSON"""
    stations_sorted = sorted(stations, key=lambda x: (x.get("provincia", ""), x.get("nombre", "")))

    output = {
        "version": "1.0",
        "fecha_generacion": time.strftime("%Y-%m-%d %H:%M:%S"),
        "total_estaciones": len(stations_sorted),
        "fuente": "AEMET OpenData",
        "estaciones": stations_sorted
    }

    with open(filename, "w", encoding="utf-8") as f:
        json.dump(output, f, ensure_ascii=False, indent=2)

    logger.info(f"Inventario guardado: {filename} ({len(stations_sorted)} estaciones)")
    return output


def print_sample(stations: List[Dict], limit: int = 5):
    """Muestra ejemplo de estaciones"""
    print(f"\n📋 Primeras {min(limit, len(stations))} estaciones:")
    for s in stations[:limit]:
        print(f"  • {s['idema']} - {s['nombre']} ({s['provincia']})")
        print(f"    {s['lat']:.4f}, {s['lon']:.4f} | {s['alt']}m")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Construye inventario de estaciones AEMET")
    parser.add_argument("--api-key", default=os.getenv("AEMET_API_KEY", ""))
    parser.add_argument("--base-url", default=os.getenv("AEMET_BASE_URL", AEMET_BASE_URL))
    parser.add_argument("--output", default="estaciones_aemet.json")
    parser.add_argument("--near", nargs=2, type=float, metavar=("LAT", "LON"),
                        help="Muestra las estaciones más cercanas a estas coordenadas")
    parser.add_argument("--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None, client: Optional[AemetClient] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if client is None:
            env = dict(os.environ)
            env["AEMET_API_KEY"] = args.api_key
            env["AEMET_BASE_URL"] = args.base_url
            client = AemetClient(load_settings(env))

        print("📡 Descargando inventario de estaciones (el servidor es LENTO)...")
        raw_data = client.get_all_stations()

        print("🔄 Procesando estaciones...")
        stations = extract_station_info(raw_data)
        print_sample(stations)
        save_inventory(stations, args.output)
        print(f"\n✅ Inventario guardado: {args.output} ({len(stations)} estaciones)")

        if args.near:
            lat, lon = args.near
            print(f"\n🔍 Estaciones más cercanas a ({lat}, {lon}):")
            for station, distance in find_nearest_stations(lat, lon, stations, max_results=3):
                print(f"  • {station['idema']} - {station['nombre']} ({distance:.1f} km)")

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelado por el usuario")
        return 130
    except AemetError as e:
        logger.error(f"Error construyendo inventario: {e}")
        print(f"\n❌ ERROR: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
