from __future__ import annotations

import json

import gspread
import requests
from google.auth.exceptions import DefaultCredentialsError

from offline_sync.core.errors import ConfigError, NetworkError, RemoteError
from offline_sync.infrastructure.sheets_errors import SheetsRateLimitError, map_gspread_exception


class _FakeResponse:
    def __init__(self, status_code: int, text: str) -> None:
        self.status_code = status_code
        self.text = text


def _api_error(status_code: int, text: str) -> gspread.exceptions.APIError:
    return gspread.exceptions.APIError(_FakeResponse(status_code, text))


def test_429_es_rate_limit_reintentable() -> None:
    mapped = map_gspread_exception(_api_error(429, "RESOURCE_EXHAUSTED: Quota exceeded for read requests"))

    assert isinstance(mapped, SheetsRateLimitError)
    assert isinstance(mapped, NetworkError)
    assert mapped.code == "rate_limited"


def test_5xx_es_error_de_red_de_servidor() -> None:
    mapped = map_gspread_exception(_api_error(503, "backend unavailable"))

    assert isinstance(mapped, NetworkError)
    assert mapped.code == "server_error"


def test_403_y_404_son_rechazos_remotos() -> None:
    forbidden = map_gspread_exception(_api_error(403, "PERMISSION_DENIED"))
    missing = map_gspread_exception(_api_error(404, "Requested entity was not found."))

    assert isinstance(forbidden, RemoteError) and forbidden.code == "permission_denied"
    assert isinstance(missing, RemoteError) and missing.code == "not_found"


def test_api_deshabilitada_es_error_de_configuracion() -> None:
    mapped = map_gspread_exception(_api_error(400, "Google Sheets API has not been used in project 123"))

    assert isinstance(mapped, ConfigError)


def test_worksheet_inexistente_tiene_codigo_propio() -> None:
    mapped = map_gspread_exception(gspread.exceptions.WorksheetNotFound("tasks"))

    assert isinstance(mapped, RemoteError)
    assert mapped.code == "worksheet_not_found"


def test_errores_de_transporte_son_network_error() -> None:
    assert isinstance(map_gspread_exception(requests.exceptions.ConnectionError("dns")), NetworkError)
    assert isinstance(map_gspread_exception(requests.exceptions.Timeout("slow")), NetworkError)
    assert isinstance(map_gspread_exception(TimeoutError("slow")), NetworkError)


def test_credenciales_invalidas_son_config_error() -> None:
    missing = FileNotFoundError(2, "No such file", "/tmp/creds.json")

    assert isinstance(map_gspread_exception(missing), ConfigError)
    assert "/tmp/creds.json" in str(map_gspread_exception(missing))
    assert isinstance(map_gspread_exception(DefaultCredentialsError("bad")), ConfigError)
    assert isinstance(map_gspread_exception(json.JSONDecodeError("bad", "{", 0)), ConfigError)


def test_errores_de_aplicacion_no_se_remapean() -> None:
    original = RemoteError("ya traducido", code="x")

    assert map_gspread_exception(original) is original
