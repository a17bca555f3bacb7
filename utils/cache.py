"""
Caché con TTL por categoría para respuestas de AEMET

El almacenamiento se inyecta (CacheStore); por defecto es un dict en memoria.
Cada escritura purga las entradas caducadas del almacén (si lo soporta) y
MemoryCacheStore además limita el número de entradas.
Las peticiones concurrentes a la misma clave se serializan con un lock por
clave para no repetir la descarga; claves distintas no compiten entre sí.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import quote

from config import DEFAULT_CACHE_TTLS, MAX_CACHE_ENTRIES

logger = logging.getLogger(__name__)

KEY_PREFIX = "aemet"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class CacheStore(Protocol):
    """Interfaz mínima de almacenamiento clave → CacheEntry."""

    def get(self, key: str) -> Optional[CacheEntry]:
        ...

    def set(self, key: str, entry: CacheEntry) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryCacheStore:
    """Almacén en memoria, seguro entre hilos, con tamaño máximo."""

    def __init__(self, max_entries: int = MAX_CACHE_ENTRIES):
        self._data: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._data[key] = entry
            # Lleno: fuera las entradas que caducan antes
            while self.max_entries and len(self._data) > self.max_entries:
                oldest = min(self._data, key=lambda k: self._data[k].expires_at)
                del self._data[oldest]

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def purge_expired(self, now: float) -> int:
        """Elimina las entradas caducadas y devuelve cuántas se borraron."""
        with self._lock:
            expired = [k for k, entry in self._data.items() if not entry.is_fresh(now)]
            for key in expired:
                del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def build_cache_key(dataset: str, *parts: Any) -> str:
    """
    Clave determinista para una consulta lógica

    Cada parte se codifica (percent-encoding) para que ':' dentro de un valor
    no pueda colisionar con el separador.

    Ejemplo:
        build_cache_key("daily_climate", "3195", "2024-01-01T00:00:00UTC", "2024-01-31T00:00:00UTC")
        → "aemet:daily_climate:3195:2024-01-01T00%3A00%3A00UTC:2024-01-31T00%3A00%3A00UTC"
    """
    encoded = [quote(str(dataset), safe="")]
    encoded.extend(quote(str(part), safe="") for part in parts)
    return ":".join([KEY_PREFIX] + encoded)


class _KeyLocks:
    """Locks por clave con contador de uso; se liberan cuando nadie los espera."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    def acquire(self, key: str) -> threading.Lock:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[key] = slot
            slot[1] += 1
        slot[0].acquire()
        return slot[0]

    def release(self, key: str) -> None:
        with self._guard:
            slot = self._locks[key]
            slot[0].release()
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class CacheLayer:
    """Memoiza resultados por clave lógica con TTL según categoría."""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        ttls: Optional[Mapping[str, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else MemoryCacheStore()
        self.ttls = dict(DEFAULT_CACHE_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self._clock = clock
        self._key_locks = _KeyLocks()

    def ttl_for(self, category: str) -> int:
        try:
            return int(self.ttls[category])
        except KeyError:
            raise ValueError(f"Categoría de caché desconocida: {category!r}")

    def get(self, key: str) -> Optional[Any]:
        """Devuelve el payload si existe y no ha caducado. Las entradas caducadas se eliminan."""
        entry = self.store.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            self.store.delete(key)
            return None
        return entry.payload

    def get_or_fetch(self, key: str, category: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Devuelve el payload cacheado o lo descarga con fetch_fn

        Args:
            key: Clave lógica (ver build_cache_key)
            category: Categoría de TTL (stations, recent_data, historical_data)
            fetch_fn: Función sin argumentos que descarga el dato

        Returns:
            Payload cacheado o recién descargado
        """
        ttl = self.ttl_for(category)

        entry = self.store.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            logger.debug(f"Cache hit: {key}")
            return entry.payload

        self._key_locks.acquire(key)
        try:
            # Otro hilo pudo rellenarla mientras esperábamos el lock
            entry = self.store.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug(f"Cache hit tras espera: {key}")
                return entry.payload

            logger.debug(f"Cache miss: {key} (ttl={ttl}s)")
            payload = fetch_fn()
            now = self._clock()
            self.store.set(key, CacheEntry(key, payload, now + ttl))
            self._purge_expired(now)
            return payload
        finally:
            self._key_locks.release(key)

    def _purge_expired(self, now: float) -> None:
        # purge_expired es opcional en los almacenes inyectados
        purge = getattr(self.store, "purge_expired", None)
        if purge is None:
            return
        removed = purge(now)
        if removed:
            logger.debug(f"Cache: {removed} entradas caducadas eliminadas")
