import unittest

import requests

from weather_consensus.data_sources import open_meteo_client
from weather_consensus.models import MODELS_BY_ID, ModelMetadata

JAN1_UTC = 1704067200  # 2024-01-01T00:00Z


class DummyResp:
    def __init__(self, payload, status_code=200, headers=None):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _session_returning(resp, calls=None):
    def _get(*args, **kwargs):
        if calls is not None:
            calls.append((args, kwargs))
        return resp

    return type("S", (), {"get": staticmethod(_get)})()


def _forecast_payload():
    return {
        "hourly": {
            "time": [JAN1_UTC, JAN1_UTC + 3600],
            "temperature_2m": [1.5, None],
            "precipitation": [None, 0.4],
            "precipitation_probability": [10, None],
            "wind_speed_10m": [12.0, 14.0],
            "wind_direction_10m": [200, 210],
            "cloud_cover": [80, 90],
            "weather_code": [53, None],
        },
        "daily": {
            "time": [JAN1_UTC],
            "temperature_2m_max": [4.0],
            "temperature_2m_min": [-2.0],
            "precipitation_sum": [None],
            "weather_code": [73],
            "sunrise": [JAN1_UTC + 7 * 3600],
        },
    }


class TestOpenMeteoClient(unittest.TestCase):
    def setUp(self):
        self._orig_session = open_meteo_client.session
        self.model = MODELS_BY_ID["gfs_seamless"]

    def tearDown(self):
        open_meteo_client.session = self._orig_session

    def test_fetch_model_forecast_parses_series(self):
        calls = []
        open_meteo_client.session = _session_returning(
            DummyResp(_forecast_payload(), headers={"ETag": "abc"}), calls
        )
        forecast = open_meteo_client.fetch_model_forecast(self.model, 43.65, -79.38, "UTC", clock=lambda: 42)

        self.assertTrue(forecast.is_ok)
        self.assertEqual(forecast.etag, "abc")
        self.assertEqual(forecast.fetched_at, 42)
        self.assertEqual([h.time for h in forecast.hourly], ["2024-01-01T00:00", "2024-01-01T01:00"])
        self.assertEqual(forecast.hourly[0].epoch, JAN1_UTC * 1000)
        self.assertEqual(forecast.hourly[0].weather_code, 61)
        self.assertIsNone(forecast.hourly[1].weather_code)
        self.assertIsNone(forecast.hourly[1].temperature)
        self.assertEqual(forecast.hourly[0].precipitation, 0.0)
        self.assertEqual(forecast.hourly[1].precipitation_probability, 0.0)

        day = forecast.daily[0]
        self.assertEqual(day.date, "2024-01-01")
        self.assertEqual(day.weather_code, 71)
        self.assertEqual(day.precipitation_sum, 0.0)
        self.assertEqual(day.sunrise, "2024-01-01T07:00")

        params = calls[0][1]["params"]
        self.assertEqual(params["timeformat"], "unixtime")
        self.assertIn("weather_code", params["hourly"])
        self.assertEqual(calls[0][0][0], self.model.endpoint)

    def test_out_of_range_epochs_are_dropped(self):
        payload = _forecast_payload()
        payload["hourly"]["time"] = [1e20, JAN1_UTC + 3600]
        payload["daily"]["sunrise"] = [-1e20]
        open_meteo_client.session = _session_returning(DummyResp(payload))

        forecast = open_meteo_client.fetch_model_forecast(self.model, 43.65, -79.38, "UTC")

        self.assertTrue(forecast.is_ok)
        self.assertEqual([h.time for h in forecast.hourly], ["2024-01-01T01:00"])
        self.assertIsNone(forecast.daily[0].sunrise)

    def test_only_out_of_range_epochs_is_an_error_not_a_raise(self):
        payload = _forecast_payload()
        payload["hourly"]["time"] = [1e20, 1e21]
        open_meteo_client.session = _session_returning(DummyResp(payload))

        forecast = open_meteo_client.fetch_model_forecast(self.model, 43.65, -79.38, "UTC")

        self.assertEqual(forecast.status, "error")
        self.assertEqual(forecast.hourly, [])

    def test_local_keys_follow_requested_zone(self):
        open_meteo_client.session = _session_returning(DummyResp(_forecast_payload()))
        forecast = open_meteo_client.fetch_model_forecast(self.model, 43.65, -79.38, "America/Toronto")
        self.assertEqual(forecast.hourly[0].time, "2023-12-31T19:00")

    def test_metadata_is_stamped(self):
        open_meteo_client.session = _session_returning(DummyResp(_forecast_payload()))
        metadata = ModelMetadata(
            model_id=self.model.id,
            run_initialisation_time=JAN1_UTC - 4 * 3600,
            run_availability_time=JAN1_UTC - 3600,
            update_interval_seconds=21600,
            metadata_fetched_at=7,
        )
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC", metadata=metadata)
        self.assertEqual(forecast.run_availability_time, JAN1_UTC - 3600)
        self.assertEqual(forecast.last_seen_run_availability_time, JAN1_UTC - 3600)
        self.assertEqual(forecast.update_interval_seconds, 21600)

    def test_http_error_becomes_error_forecast(self):
        open_meteo_client.session = _session_returning(DummyResp({}, status_code=500))
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC", clock=lambda: 99)
        self.assertFalse(forecast.is_ok)
        self.assertEqual(forecast.status, "error")
        self.assertIn("500", forecast.error)
        self.assertEqual(forecast.hourly, [])
        self.assertEqual(forecast.fetched_at, 99)

    def test_network_error_becomes_error_forecast(self):
        def _raise(*args, **kwargs):
            raise requests.ConnectionError("boom")

        open_meteo_client.session = type("S", (), {"get": staticmethod(_raise)})()
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC")
        self.assertEqual(forecast.error, "boom")

    def test_missing_temperature_series_is_an_error(self):
        payload = _forecast_payload()
        del payload["hourly"]["temperature_2m"]
        open_meteo_client.session = _session_returning(DummyResp(payload))
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC")
        self.assertFalse(forecast.is_ok)
        self.assertIn("temperature", forecast.error)

    def test_missing_daily_is_allowed(self):
        payload = _forecast_payload()
        del payload["daily"]
        open_meteo_client.session = _session_returning(DummyResp(payload))
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC")
        self.assertTrue(forecast.is_ok)
        self.assertEqual(forecast.daily, [])

    def test_invalid_json_becomes_error_forecast(self):
        open_meteo_client.session = _session_returning(DummyResp(ValueError("bad json")))
        forecast = open_meteo_client.fetch_model_forecast(self.model, 1, 2, "UTC")
        self.assertEqual(forecast.error, "bad json")


class TestOpenMeteoMetadata(unittest.TestCase):
    def setUp(self):
        self._orig_session = open_meteo_client.session

    def tearDown(self):
        open_meteo_client.session = self._orig_session

    def test_fetch_model_metadata(self):
        calls = []
        payload = {
            "last_run_initialisation_time": JAN1_UTC,
            "last_run_availability_time": JAN1_UTC + 3 * 3600,
            "update_interval_seconds": 0,
        }
        open_meteo_client.session = _session_returning(DummyResp(payload), calls)
        metadata = open_meteo_client.fetch_model_metadata(MODELS_BY_ID["ecmwf_ifs"], now_ms=5)

        self.assertEqual(metadata.model_id, "ecmwf_ifs")
        self.assertEqual(metadata.run_availability_time, JAN1_UTC + 3 * 3600)
        self.assertIsNone(metadata.update_interval_seconds)
        self.assertEqual(metadata.metadata_fetched_at, 5)
        self.assertEqual(calls[0][0][0], "https://api.open-meteo.com/data/ecmwf_ifs/static/meta.json")

    def test_fetch_model_metadata_raises_on_http_error(self):
        open_meteo_client.session = _session_returning(DummyResp({}, status_code=503))
        with self.assertRaises(requests.HTTPError):
            open_meteo_client.fetch_model_metadata(MODELS_BY_ID["gem_seamless"])


if __name__ == "__main__":
    unittest.main()
