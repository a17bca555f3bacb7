"""
Cliente de bajo nivel para AEMET OpenData

AEMET usa un patrón de 2 pasos:
1. Llamar al endpoint (con api_key) → devuelve JSON con URL temporal en 'datos'
2. Llamar a la URL temporal (sin api_key) → devuelve los datos

Cada paso tiene su propio contador de reintentos. Se reintenta en 429 y 5xx
y, además, en timeouts y errores de conexión (status None): la regla es más
amplia que "solo 429/5xx" a propósito. Cualquier otro estado HTTP es fatal al
primer intento.
"""
import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from aemet_errors import (
    ConfigurationError,
    DecodeError,
    FetchCancelled,
    MalformedResponse,
    UpstreamError,
)
from config import (
    AEMET_BASE_URL,
    AEMET_DATA_TIMEOUT_SECONDS,
    AEMET_METADATA_TIMEOUT_SECONDS,
    BASE_DELAY_MS,
    BODY_PREVIEW_CHARS,
    JITTER_MAX,
    JITTER_MIN,
    MAX_RETRIES,
)

logger = logging.getLogger(__name__)

STEP_METADATA = "metadata"
STEP_DATA = "datos"

OUTCOME_SUCCESS = "success"
OUTCOME_RETRY = "retry"
OUTCOME_FATAL = "fatal"
OUTCOME_EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class FetchAttempt:
    """Resultado de un intento HTTP dentro de un paso. Efímero, no se persiste."""
    step: str
    url: str
    attempt: int
    status: Optional[int]
    outcome: str
    delay_s: float = 0.0


AttemptObserver = Callable[[FetchAttempt], None]


def is_retryable_status(status: Optional[int]) -> bool:
    """429 (rate limit), 5xx o fallo de red (status None)."""
    if status is None:
        return True
    return status == 429 or 500 <= status < 600


def parse_retry_after(value: Any) -> Optional[int]:
    """Retry-After en segundos. Las fechas HTTP se ignoran."""
    if value is None:
        return None
    try:
        seconds = int(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def backoff_delay(
    attempt: int,
    base_delay_ms: float = BASE_DELAY_MS,
    retry_after: Optional[int] = None,
    rng=random,
) -> float:
    """
    Backoff exponencial con jitter: base * 2^attempt escalado a 80-120%

    Args:
        attempt: Número de intento (empieza en 0)
        base_delay_ms: Retardo base en milisegundos
        retry_after: Pista Retry-After del servidor (segundos)

    Returns:
        Retardo en segundos
    """
    delay_ms = base_delay_ms * (2 ** attempt)
    delay_ms *= rng.uniform(JITTER_MIN, JITTER_MAX)
    if retry_after:
        delay_ms = max(delay_ms, retry_after * 1000.0)
    return delay_ms / 1000.0


def decode_payload(raw: bytes) -> Any:
    """
    Decodifica el cuerpo de AEMET a JSON

    AEMET mezcla UTF-8 y latin-1 (iso-8859-1) según el endpoint; si el cuerpo
    no es UTF-8 válido se reinterpreta como latin-1.
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")

    try:
        data = json.loads(text)
    except ValueError as exc:
        preview = text[:BODY_PREVIEW_CHARS]
        raise DecodeError(f"No se pudo decodificar JSON de AEMET: {exc}", preview=preview) from exc

    return data if data is not None else []


class AemetFetcher:
    """Ejecuta el protocolo de 2 pasos con reintentos. Sin estado entre llamadas."""

    def __init__(
        self,
        api_key: str,
        base_url: str = AEMET_BASE_URL,
        max_retries: int = MAX_RETRIES,
        base_delay_ms: float = BASE_DELAY_MS,
        metadata_timeout: float = AEMET_METADATA_TIMEOUT_SECONDS,
        data_timeout: float = AEMET_DATA_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        observer: Optional[AttemptObserver] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng=None,
    ):
        key = str(api_key or "").strip()
        if not key:
            raise ConfigurationError(
                "API key de AEMET no configurada. Define AEMET_API_KEY en el entorno."
            )
        self.api_key = key
        self.base_url = str(base_url or AEMET_BASE_URL).rstrip("/")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.metadata_timeout = metadata_timeout
        self.data_timeout = data_timeout
        self.session = session or requests.Session()
        self.observer = observer
        self._sleep = sleep or time.sleep
        self._rng = rng or random

    def fetch(
        self,
        endpoint: str,
        label: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """
        Descarga un recurso completo de AEMET

        Args:
            endpoint: Ruta relativa a base_url (ej: "/api/observacion/convencional/todas")
            label: Etiqueta para logs (por defecto el endpoint)
            cancel_event: Evento que permite abandonar un bucle de reintentos

        Returns:
            Estructura JSON decodificada (normalmente lista de dicts)
        """
        label = label or endpoint
        url = f"{self.base_url}{endpoint}"

        # Paso 1: Obtener URL de datos
        response = self._request_with_retries(
            STEP_METADATA, url, {"api_key": self.api_key}, self.metadata_timeout, label, cancel_event
        )
        datos_url = self._extract_datos_url(response, label)

        # Paso 2: Descargar datos desde URL temporal
        logger.info(f"[AEMET API:{label}] Descargando datos desde: {datos_url[:80]}")
        data_response = self._request_with_retries(
            STEP_DATA, datos_url, None, self.data_timeout, label, cancel_event
        )

        try:
            data = decode_payload(data_response.content)
        except DecodeError as exc:
            logger.error(
                f"[AEMET API:{label}] JSON inválido en {datos_url}: {exc} "
                f"(inicio: {exc.preview[:120]!r})"
            )
            raise

        if isinstance(data, list):
            logger.info(f"[AEMET API:{label}] Descargados {len(data)} registros")
        return data

    def _extract_datos_url(self, response: requests.Response, label: str) -> str:
        try:
            metadata = decode_payload(response.content)
        except DecodeError as exc:
            logger.error(f"[AEMET API:{label}] Metadatos no son JSON")
            raise MalformedResponse(
                "La respuesta de metadatos de AEMET no es JSON", payload=exc.preview
            ) from exc

        datos_url = metadata.get("datos") if isinstance(metadata, dict) else None
        if not datos_url or not isinstance(datos_url, str):
            estado = metadata.get("estado") if isinstance(metadata, dict) else None
            descripcion = metadata.get("descripcion") if isinstance(metadata, dict) else None
            logger.error(
                f"[AEMET API:{label}] No hay URL de datos en respuesta "
                f"(estado={estado}, descripcion={descripcion})"
            )
            raise MalformedResponse(
                f"La respuesta de AEMET no contiene URL de datos (estado={estado}: {descripcion})",
                payload=metadata,
            )
        return datos_url

    def _send(
        self, url: str, headers: Optional[Dict[str, str]], timeout: float
    ) -> Tuple[Optional[requests.Response], Optional[int], Optional[Exception]]:
        try:
            response = self.session.get(url, headers=headers, timeout=timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            return None, None, exc
        return response, response.status_code, None

    def _classify(
        self, step: str, url: str, attempt: int, response: Optional[requests.Response], status: Optional[int]
    ) -> FetchAttempt:
        if status is not None and 200 <= status < 300:
            return FetchAttempt(step, url, attempt, status, OUTCOME_SUCCESS)
        if not is_retryable_status(status):
            return FetchAttempt(step, url, attempt, status, OUTCOME_FATAL)
        if attempt >= self.max_retries:
            return FetchAttempt(step, url, attempt, status, OUTCOME_EXHAUSTED)

        retry_after = parse_retry_after(response.headers.get("Retry-After")) if response is not None else None
        delay = backoff_delay(attempt, self.base_delay_ms, retry_after, rng=self._rng)
        return FetchAttempt(step, url, attempt, status, OUTCOME_RETRY, delay)

    def _request_with_retries(
        self,
        step: str,
        url: str,
        headers: Optional[Dict[str, str]],
        timeout: float,
        label: str,
        cancel_event: Optional[threading.Event],
    ) -> requests.Response:
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelled(f"Petición a AEMET cancelada ({label}, paso {step})")

            response, status, exc = self._send(url, headers, timeout)
            result = self._classify(step, url, attempt, response, status)

            if result.outcome == OUTCOME_SUCCESS:
                return response

            self._notify(result)

            if result.outcome == OUTCOME_RETRY:
                logger.warning(
                    f"[AEMET API:{label}] Error transitorio en paso {step}, reintentando: "
                    f"url={url} status={status} intento={attempt + 1} delay={result.delay_s:.3f}s"
                    + (f" ({exc})" if exc else "")
                )
                self._wait(result.delay_s, cancel_event, label)
                attempt += 1
                continue

            if result.outcome == OUTCOME_EXHAUSTED:
                logger.error(
                    f"[AEMET API:{label}] Fallo en paso {step} tras reintentos: "
                    f"url={url} status={status} intentos={attempt + 1}"
                )
                raise UpstreamError(status, attempts=attempt + 1, url=url, exhausted=True) from exc

            body = response.text[:BODY_PREVIEW_CHARS] if response is not None else ""
            logger.error(
                f"[AEMET API:{label}] Fallo no reintentable en paso {step}: "
                f"url={url} status={status} respuesta={body!r}"
            )
            raise UpstreamError(status, attempts=attempt + 1, url=url)

    def _wait(self, delay: float, cancel_event: Optional[threading.Event], label: str) -> None:
        if cancel_event is None:
            self._sleep(delay)
            return
        if cancel_event.wait(delay):
            raise FetchCancelled(f"Petición a AEMET cancelada durante el backoff ({label})")

    def _notify(self, result: FetchAttempt) -> None:
        if self.observer is not None:
            self.observer(result)
