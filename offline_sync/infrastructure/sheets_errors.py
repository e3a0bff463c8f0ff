from __future__ import annotations

import json

import gspread
import requests
from google.auth.exceptions import DefaultCredentialsError, TransportError

from offline_sync.core.errors import AppError, ConfigError, NetworkError, RemoteError

_TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class SheetsRateLimitError(NetworkError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="rate_limited")


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _extract_api_error_text(ex: gspread.exceptions.APIError) -> str:
    response = getattr(ex, "response", None)
    if response is not None:
        text = getattr(response, "text", "")
        if text:
            return text
    return str(ex)


def _is_rate_limited(text_lower: str, status_code: int | None) -> bool:
    if status_code == 429:
        return True
    return any(
        token in text_lower
        for token in ("[429]", "resource_exhausted", "rate_limit_exceeded", "quota exceeded")
    )


def classify_api_error(text_lower: str, status_code: int | None) -> AppError:
    if _is_rate_limited(text_lower, status_code):
        return SheetsRateLimitError("Límite de Google Sheets alcanzado. Espera 1 minuto y reintenta.")
    if status_code in _TRANSIENT_STATUS_CODES:
        return NetworkError(f"Google Sheets no disponible temporalmente ({status_code}).", code="server_error")
    if "google sheets api has not been used" in text_lower or "it is disabled" in text_lower:
        return ConfigError("La API de Google Sheets no está habilitada en el proyecto de Google Cloud.")
    if status_code == 404 or "[404]" in text_lower or "requested entity was not found" in text_lower:
        return RemoteError("El spreadsheet o la hoja no existe.", code="not_found")
    if status_code == 403 or "[403]" in text_lower or "permission_denied" in text_lower:
        return RemoteError("La hoja no está compartida con la cuenta de servicio.", code="permission_denied")
    return RemoteError(text_lower or "Error desconocido de Google Sheets.", code="remote_error")


def map_gspread_exception(ex: Exception) -> AppError:
    if isinstance(ex, AppError):
        return ex
    if isinstance(ex, gspread.exceptions.WorksheetNotFound):
        return RemoteError(f"No existe la worksheet {ex}.", code="worksheet_not_found")
    if isinstance(ex, gspread.exceptions.APIError):
        return classify_api_error(_extract_api_error_text(ex).strip().lower(), extract_response_status_code(ex))
    if isinstance(ex, (requests.exceptions.ConnectionError, requests.exceptions.Timeout, TransportError)):
        return NetworkError(f"Sin conexión con Google Sheets: {ex}")
    if isinstance(ex, FileNotFoundError):
        path = getattr(ex, "filename", None)
        return ConfigError(f"No se encuentra el fichero de credenciales en {path}." if path else "No se encuentra el fichero de credenciales.")
    if isinstance(ex, (json.JSONDecodeError, DefaultCredentialsError)):
        return ConfigError("El fichero de credenciales no es válido. Revisa su contenido.")
    if isinstance(ex, (TimeoutError, ConnectionError, OSError)):
        return NetworkError(f"Error de red con Google Sheets: {ex}")
    return RemoteError(str(ex) or ex.__class__.__name__, code="remote_error")
