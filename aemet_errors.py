"""
Jerarquía de errores del cliente AEMET OpenData
"""
from typing import Any, Optional


class AemetError(Exception):
    """Error base. Todos los fallos del cliente heredan de aquí."""


class ConfigurationError(AemetError):
    """Configuración inválida o incompleta (p. ej. sin API key). Nunca se reintenta."""


class UpstreamError(AemetError):
    """
    Respuesta HTTP no exitosa de AEMET

    status es None cuando el último intento falló por red (timeout/conexión).
    exhausted indica si se agotaron los reintentos o fue un error no reintentable.
    """

    def __init__(
        self,
        status: Optional[int],
        attempts: int = 1,
        url: str = "",
        exhausted: bool = False,
    ):
        self.status = status
        self.attempts = attempts
        self.url = url
        self.exhausted = exhausted
        if exhausted:
            message = f"AEMET falló tras {attempts - 1} reintentos: {status}"
        else:
            message = f"Petición a AEMET fallida: {status}"
        super().__init__(message)


class MalformedResponse(AemetError):
    """La respuesta de metadatos no trae el campo 'datos' con la URL temporal."""

    def __init__(self, message: str, payload: Any = None):
        self.payload = payload
        super().__init__(message)


class DecodeError(AemetError):
    """El cuerpo de datos no es JSON válido, ni siquiera tras normalizar el encoding."""

    def __init__(self, message: str, preview: str = ""):
        self.preview = preview
        super().__init__(message)


class FetchCancelled(AemetError):
    """El llamante abandonó la petición durante una espera de backoff."""
