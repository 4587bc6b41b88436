import datetime as dt
import unittest

import requests

from weather_consensus.data_sources import meteostat_client
from weather_consensus.data_sources.meteostat_client import (
    ObservationsNotConfigured,
    bucket_end_ms,
    bucket_ms,
    is_bucket_completed,
    parse_observation_rows,
)


class DummyResp:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._payload


NOW = dt.datetime(2024, 6, 1, 15, 20, tzinfo=dt.timezone.utc)


NOW_MS = int(NOW.timestamp() * 1000)


def _utc_ms(hour):
    return int(dt.datetime(2024, 6, 1, hour, tzinfo=dt.timezone.utc).timestamp() * 1000)


class TestBuckets(unittest.TestCase):
    def test_bucket_bounds(self):
        ts = 3_600_000 * 10 + 125_000
        self.assertEqual(bucket_ms(ts), 3_600_000 * 10)
        self.assertEqual(bucket_end_ms(ts), 3_600_000 * 11)
        self.assertEqual(bucket_ms(ts, 15), 3_600_000 * 10)

    def test_bucket_completion(self):
        start = 3_600_000 * 10
        self.assertFalse(is_bucket_completed(start, 60, start + 59 * 60_000))
        self.assertTrue(is_bucket_completed(start, 60, start + 60 * 60_000))


class TestParseObservationRows(unittest.TestCase):
    def test_filters_implausible_and_future_rows(self):
        rows = [
            {"time": "2024-06-01 13:00:00", "temp": 21.5, "prcp": 0.2, "wspd": 10, "wdir": 370, "wpgt": None},
            {"time": "2024-06-01 14:00:00", "temp": 99.0},
            {"time": "2024-06-01 15:00:00", "temperature": 22.0, "wind_speed": 12},
            {"time": "2024-06-01 16:00:00", "temp": 23.0},
            {"time": "garbage", "temp": 20.0},
            "not a row",
        ]
        out = parse_observation_rows(rows, dt.timezone.utc, NOW_MS)

        self.assertEqual([o.time for o in out], ["2024-06-01T13:00", "2024-06-01T15:00"])
        self.assertEqual(out[0].precipitation, 0.2)
        self.assertIsNone(out[0].wind_direction)
        self.assertEqual(out[1].wind_speed, 12.0)
        self.assertEqual(out[0].epoch, _utc_ms(13))

    def test_current_hour_is_kept_but_marked_incomplete(self):
        rows = [
            {"time": "2024-06-01 14:00:00", "temp": 20.0},
            {"time": "2024-06-01 15:00:00", "temp": 21.0},
        ]
        out = parse_observation_rows(rows, dt.timezone.utc, NOW_MS)
        self.assertEqual([o.complete for o in out], [True, False])

        out = parse_observation_rows(rows, dt.timezone.utc, _utc_ms(16))
        self.assertEqual([o.complete for o in out], [True, True])

    def test_rows_are_read_in_the_requested_zone(self):
        zone = dt.timezone(dt.timedelta(hours=-4))
        rows = [
            {"time": "2024-06-01 11:00:00", "temp": 18.0},
            {"time": "2024-06-01 12:00:00", "temp": 19.0},
        ]
        out = parse_observation_rows(rows, zone, NOW_MS)

        # 11:00 at UTC-4 is 15:00 UTC, the hour in progress; 12:00 is still ahead
        self.assertEqual([o.time for o in out], ["2024-06-01T11:00"])
        self.assertEqual(out[0].epoch, _utc_ms(15))
        self.assertFalse(out[0].complete)

    def test_non_list_gives_empty(self):
        self.assertEqual(parse_observation_rows(None, dt.timezone.utc, NOW_MS), [])


class TestFetchObservedHourly(unittest.TestCase):
    def setUp(self):
        self._orig_session = meteostat_client.session

    def tearDown(self):
        meteostat_client.session = self._orig_session

    def test_requires_api_key(self):
        orig_key = meteostat_client.settings.meteostat_api_key
        meteostat_client.settings.meteostat_api_key = None
        try:
            with self.assertRaises(ObservationsNotConfigured):
                meteostat_client.fetch_observed_hourly(43.6, -79.4, "UTC")
        finally:
            meteostat_client.settings.meteostat_api_key = orig_key

    def test_fetch_sends_key_and_window(self):
        calls = []

        def _get(*args, **kwargs):
            calls.append(kwargs)
            return DummyResp({"data": [{"time": "2024-06-01 14:00:00", "temp": 20.0}]})

        meteostat_client.session = type("S", (), {"get": staticmethod(_get)})()
        observed = meteostat_client.fetch_observed_hourly(43.6, -79.4, "UTC", api_key="k", now=NOW)

        self.assertEqual(len(observed.hourly), 1)
        self.assertEqual(observed.hourly[0].temperature, 20.0)
        self.assertTrue(observed.hourly[0].complete)
        self.assertEqual(calls[0]["headers"]["x-rapidapi-key"], "k")
        self.assertEqual(calls[0]["params"]["start"], "2024-05-30")
        self.assertEqual(calls[0]["params"]["end"], "2024-06-01")

    def test_upstream_failure_returns_none(self):
        meteostat_client.session = type("S", (), {"get": lambda *a, **k: DummyResp({}, status_code=429)})()
        self.assertIsNone(meteostat_client.fetch_observed_hourly(43.6, -79.4, "UTC", api_key="k", now=NOW))


if __name__ == "__main__":
    unittest.main()
