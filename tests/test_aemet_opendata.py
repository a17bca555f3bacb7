"""
Tests del protocolo de 2 pasos de AEMET (reintentos, backoff, encoding).
"""
import logging
import threading

import pytest
import requests

from aemet_errors import ConfigurationError, DecodeError, FetchCancelled, MalformedResponse, UpstreamError
from api.aemet_opendata import (
    OUTCOME_EXHAUSTED,
    OUTCOME_FATAL,
    OUTCOME_RETRY,
    STEP_DATA,
    STEP_METADATA,
    AemetFetcher,
    backoff_delay,
    decode_payload,
    is_retryable_status,
    parse_retry_after,
)
from conftest import BASE_URL, DATOS_URL, make_response, metadata_response

ENDPOINT = "/api/observacion/convencional/todas"
METADATA_URL = BASE_URL + ENDPOINT
PAYLOAD = [{"idema": "3195", "ta": 12.5}]


def build_fetcher(session, sleeper, observer=None, max_retries=3):
    return AemetFetcher(
        api_key="test-key",
        base_url=BASE_URL,
        max_retries=max_retries,
        base_delay_ms=500,
        session=session,
        observer=observer,
        sleep=sleeper,
    )


# ------------------------------------------------------------
# Funciones puras
# ------------------------------------------------------------

@pytest.mark.parametrize("attempt", [0, 1, 2, 3])
def test_backoff_delay_within_jitter_bounds(attempt):
    base = 0.5 * (2 ** attempt)
    for _ in range(200):
        delay = backoff_delay(attempt, 500)
        assert base * 0.8 <= delay <= base * 1.2


def test_backoff_delay_uses_retry_after_when_larger():
    assert backoff_delay(0, 500, retry_after=5) == 5.0


def test_backoff_delay_keeps_backoff_when_retry_after_is_smaller():
    delay = backoff_delay(5, 500, retry_after=2)
    assert 16 * 0.8 <= delay <= 16 * 1.2


def test_parse_retry_after():
    assert parse_retry_after("7") == 7
    assert parse_retry_after(" 3 ") == 3
    assert parse_retry_after(None) is None
    assert parse_retry_after("0") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None


def test_is_retryable_status():
    assert is_retryable_status(429)
    assert is_retryable_status(500)
    assert is_retryable_status(503)
    assert is_retryable_status(None)
    assert not is_retryable_status(404)
    assert not is_retryable_status(401)
    assert not is_retryable_status(400)


def test_decode_payload_utf8():
    assert decode_payload('[{"nombre": "A Coruña"}]'.encode("utf-8")) == [{"nombre": "A Coruña"}]


def test_decode_payload_latin1_accents():
    raw = '[{"nombre": "MÁLAGA AEROPUERTO", "provincia": "CÁDIZ", "ubi": "Logroño"}]'.encode("latin-1")
    data = decode_payload(raw)
    assert data[0]["nombre"] == "MÁLAGA AEROPUERTO"
    assert data[0]["provincia"] == "CÁDIZ"
    assert data[0]["ubi"] == "Logroño"


def test_decode_payload_null_is_empty_list():
    assert decode_payload(b"null") == []


def test_decode_payload_invalid_json_has_bounded_preview():
    raw = b"<html>" + b"x" * 2000
    with pytest.raises(DecodeError) as excinfo:
        decode_payload(raw)
    assert excinfo.value.preview.startswith("<html>")
    assert len(excinfo.value.preview) == 500


# ------------------------------------------------------------
# Protocolo completo
# ------------------------------------------------------------

def test_missing_api_key_fails_fast(session):
    with pytest.raises(ConfigurationError):
        AemetFetcher(api_key="", session=session)
    with pytest.raises(ConfigurationError):
        AemetFetcher(api_key="   ", session=session)
    assert session.calls == []


def test_two_step_success(session, sleeper):
    session.script(METADATA_URL, metadata_response())
    session.script(DATOS_URL, make_response(200, PAYLOAD))

    data = build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert data == PAYLOAD
    assert session.urls() == [METADATA_URL, DATOS_URL]
    assert session.calls[0]["headers"] == {"api_key": "test-key"}
    # La URL temporal no lleva api_key
    assert not session.calls[1]["headers"]
    assert sleeper.delays == []


def test_429_twice_then_success_backs_off(session, sleeper):
    attempts = []
    session.script(METADATA_URL, make_response(429), make_response(429), metadata_response())
    session.script(DATOS_URL, make_response(200, PAYLOAD))

    data = build_fetcher(session, sleeper, observer=attempts.append).fetch(ENDPOINT)

    assert data == PAYLOAD
    assert len(sleeper.delays) == 2
    assert 0.4 <= sleeper.delays[0] <= 0.6
    assert 0.8 <= sleeper.delays[1] <= 1.2
    assert sleeper.delays[0] <= sleeper.delays[1]

    assert [a.outcome for a in attempts] == [OUTCOME_RETRY, OUTCOME_RETRY]
    assert [a.attempt for a in attempts] == [0, 1]
    assert all(a.status == 429 and a.step == STEP_METADATA for a in attempts)
    assert [a.delay_s for a in attempts] == sleeper.delays


def test_404_fails_immediately_without_retry(session, sleeper):
    attempts = []
    session.script(METADATA_URL, make_response(404, {"estado": 404}))

    with pytest.raises(UpstreamError) as excinfo:
        build_fetcher(session, sleeper, observer=attempts.append).fetch(ENDPOINT)

    assert excinfo.value.status == 404
    assert excinfo.value.attempts == 1
    assert not excinfo.value.exhausted
    assert session.urls() == [METADATA_URL]
    assert sleeper.delays == []
    assert [a.outcome for a in attempts] == [OUTCOME_FATAL]


def test_missing_datos_field_is_malformed_and_skips_second_call(session, sleeper):
    session.script(
        METADATA_URL,
        make_response(200, {"descripcion": "No hay datos que satisfagan esos criterios", "estado": 404}),
    )

    with pytest.raises(MalformedResponse) as excinfo:
        build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert "404" in str(excinfo.value)
    assert excinfo.value.payload["estado"] == 404
    assert session.urls() == [METADATA_URL]


def test_metadata_not_json_is_malformed(session, sleeper):
    session.script(METADATA_URL, make_response(200, b"<html>mantenimiento</html>"))

    with pytest.raises(MalformedResponse):
        build_fetcher(session, sleeper).fetch(ENDPOINT)
    assert session.urls() == [METADATA_URL]


def test_retries_exhausted(session, sleeper):
    attempts = []
    session.script(METADATA_URL, *[make_response(503) for _ in range(4)])

    with pytest.raises(UpstreamError) as excinfo:
        build_fetcher(session, sleeper, observer=attempts.append).fetch(ENDPOINT)

    err = excinfo.value
    assert err.status == 503
    assert err.exhausted
    assert err.attempts == 4
    assert "3 reintentos" in str(err)
    assert len(session.calls) == 4
    assert len(sleeper.delays) == 3
    assert attempts[-1].outcome == OUTCOME_EXHAUSTED


def test_max_retries_zero_means_single_attempt(session, sleeper):
    session.script(METADATA_URL, make_response(500))

    with pytest.raises(UpstreamError) as excinfo:
        build_fetcher(session, sleeper, max_retries=0).fetch(ENDPOINT)

    assert excinfo.value.attempts == 1
    assert sleeper.delays == []


def test_data_step_has_its_own_retry_counter(session, sleeper):
    attempts = []
    session.script(METADATA_URL, make_response(500), metadata_response())
    session.script(DATOS_URL, make_response(502), make_response(502), make_response(429), make_response(200, PAYLOAD))

    data = build_fetcher(session, sleeper, observer=attempts.append).fetch(ENDPOINT)

    assert data == PAYLOAD
    assert len(sleeper.delays) == 4
    data_attempts = [a for a in attempts if a.step == STEP_DATA]
    assert [a.attempt for a in data_attempts] == [0, 1, 2]
    assert all(a.url == DATOS_URL for a in data_attempts)


def test_data_step_non_retryable_status(session, sleeper):
    session.script(METADATA_URL, metadata_response())
    session.script(DATOS_URL, make_response(403))

    with pytest.raises(UpstreamError) as excinfo:
        build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert excinfo.value.status == 403
    assert excinfo.value.url == DATOS_URL


def test_retry_after_header_extends_delay(session, sleeper):
    session.script(METADATA_URL, make_response(429, headers={"Retry-After": "7"}), metadata_response())
    session.script(DATOS_URL, make_response(200, PAYLOAD))

    build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert sleeper.delays == [7.0]


def test_connection_errors_are_retried(session, sleeper):
    session.script(METADATA_URL, requests.ConnectionError("reset"), metadata_response())
    session.script(DATOS_URL, requests.Timeout("lento"), make_response(200, PAYLOAD))

    assert build_fetcher(session, sleeper).fetch(ENDPOINT) == PAYLOAD
    assert len(sleeper.delays) == 2


def test_connection_errors_exhausted_report_no_status(session, sleeper):
    session.script(METADATA_URL, *[requests.ConnectionError("caído") for _ in range(4)])

    with pytest.raises(UpstreamError) as excinfo:
        build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert excinfo.value.status is None
    assert excinfo.value.exhausted
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)


def test_latin1_payload_is_decoded(session, sleeper):
    payload = '[{"indicativo": "6155A", "nombre": "MÁLAGA AEROPUERTO", "provincia": "MÁLAGA"}]'
    session.script(METADATA_URL, metadata_response())
    session.script(DATOS_URL, make_response(200, payload.encode("latin-1")))

    data = build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert data[0]["nombre"] == "MÁLAGA AEROPUERTO"


def test_invalid_json_payload_raises_decode_error(session, sleeper):
    session.script(METADATA_URL, metadata_response())
    session.script(DATOS_URL, make_response(200, b"{roto"))

    with pytest.raises(DecodeError) as excinfo:
        build_fetcher(session, sleeper).fetch(ENDPOINT)

    assert excinfo.value.preview == "{roto"


def test_cancel_event_already_set_skips_requests(session, sleeper):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(FetchCancelled):
        build_fetcher(session, sleeper).fetch(ENDPOINT, cancel_event=cancel)
    assert session.calls == []


def test_cancel_event_abandons_backoff(session, sleeper):
    cancel = threading.Event()
    session.script(METADATA_URL, make_response(429), metadata_response())

    # El observador cancela en cuanto se decide reintentar
    fetcher = build_fetcher(session, sleeper, observer=lambda attempt: cancel.set())
    with pytest.raises(FetchCancelled):
        fetcher.fetch(ENDPOINT, cancel_event=cancel)

    assert session.urls() == [METADATA_URL]
    # Con cancel_event se espera sobre el evento, no con sleep
    assert sleeper.delays == []


def test_retries_and_failures_are_logged(session, sleeper, caplog):
    session.script(METADATA_URL, make_response(429), make_response(404))

    with caplog.at_level(logging.WARNING, logger="api.aemet_opendata"):
        with pytest.raises(UpstreamError):
            build_fetcher(session, sleeper).fetch(ENDPOINT, label="recent")

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(warnings) == 1
    assert "status=429" in warnings[0].getMessage()
    assert "intento=1" in warnings[0].getMessage()
    assert "delay=" in warnings[0].getMessage()
    assert len(errors) == 1
    assert "status=404" in errors[0].getMessage()
    assert "[AEMET API:recent]" in errors[0].getMessage()
