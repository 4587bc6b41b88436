import unittest

from weather_consensus.config import Settings
from weather_consensus.consensus import calculate_consensus, get_confidence_level
from weather_consensus.domain import ConfidenceColor
from weather_consensus.models import (
    MODELS_BY_ID,
    DailyForecastPoint,
    HourlyForecastPoint,
    ModelForecast,
    error_forecast,
)

NOW_S = 1_700_000_000


def _hour(i, temperature=10.0, wind_direction=180.0, weather_code=3):
    return HourlyForecastPoint(
        time=f"2024-01-01T{i:02d}:00",
        epoch=(NOW_S + i * 3600) * 1000,
        temperature=temperature,
        precipitation=0.0,
        precipitation_probability=20.0,
        wind_speed=12.0,
        wind_direction=wind_direction,
        cloud_cover=50.0,
        weather_code=weather_code,
    )


def _day(temperature_max=12.0, temperature_min=4.0, weather_code=3):
    return DailyForecastPoint(
        date="2024-01-01",
        temperature_max=temperature_max,
        temperature_min=temperature_min,
        precipitation_sum=1.0,
        precipitation_probability_max=40.0,
        wind_speed_max=20.0,
        weather_code=weather_code,
    )


def _forecast(model_id, *, hours=3, temperature=10.0, wind_direction=180.0, tmax=12.0, run_availability_time=None):
    return ModelForecast(
        model=MODELS_BY_ID[model_id],
        hourly=[_hour(i, temperature=temperature, wind_direction=wind_direction) for i in range(hours)],
        daily=[_day(temperature_max=tmax)],
        fetched_at=NOW_S * 1000,
        run_availability_time=run_availability_time,
    )


class TestCalculateConsensus(unittest.TestCase):
    def test_identical_models_agree_completely(self):
        forecasts = [_forecast(mid) for mid in ("gem_seamless", "gfs_seamless", "ecmwf_ifs")]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)

        self.assertTrue(result.is_available)
        self.assertEqual(result.metrics.overall, 100)
        self.assertEqual(result.metrics.temperature, 100)
        self.assertEqual(len(result.hourly), 3)
        self.assertEqual(len(result.daily), 1)
        self.assertEqual(result.hourly[0].overall_agreement, 100)
        self.assertEqual(result.hourly[0].weather_code.description, "Overcast")
        self.assertEqual(result.model_count, 3)
        self.assertEqual(result.failed_models, [])

    def test_two_degree_daily_spread_scores_75(self):
        forecasts = [_forecast("gem_seamless", tmax=20.0), _forecast("gfs_seamless", tmax=22.0)]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)

        day = result.daily[0]
        self.assertEqual(day.temperature_max.mean, 21.0)
        self.assertEqual(day.temperature_max.std_dev, 1.0)
        self.assertEqual(day.temperature_max.agreement, 75)
        self.assertEqual(day.temperature_min.agreement, 100)
        # daily temperature agreement is the mean of max and min: 87.5 rounds up
        self.assertEqual(result.metrics.temperature, 88)

    def test_hourly_temperature_spread(self):
        forecasts = [_forecast("gem_seamless", temperature=9.0), _forecast("gfs_seamless", temperature=11.0)]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)
        self.assertEqual(result.hourly[0].temperature.agreement, 80)
        self.assertEqual(result.hourly[0].temperature.min, 9.0)
        self.assertEqual(result.hourly[0].temperature.max, 11.0)

    def test_wind_direction_wraps(self):
        forecasts = [
            _forecast("gem_seamless", wind_direction=350.0),
            _forecast("gfs_seamless", wind_direction=10.0),
        ]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)
        direction = result.hourly[0].wind_direction
        self.assertEqual(direction.mean, 0)
        self.assertTrue(direction.available)
        self.assertLess(direction.agreement, 100)

    def test_fewer_than_two_successful_models_is_unavailable(self):
        forecasts = [
            _forecast("gem_seamless"),
            error_forecast(MODELS_BY_ID["gfs_seamless"], "HTTP 500", fetched_at=NOW_S * 1000),
        ]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)

        self.assertFalse(result.is_available)
        self.assertEqual(result.metrics.overall, 0)
        self.assertEqual(result.hourly, [])
        self.assertEqual(result.successful_models, ["GEM"])
        self.assertEqual(result.failed_models, ["GFS"])

    def test_empty_hourly_counts_as_failed(self):
        empty = ModelForecast(model=MODELS_BY_ID["ecmwf_ifs"], hourly=[], daily=[_day()])
        result = calculate_consensus([_forecast("gem_seamless"), empty], now_seconds=NOW_S)
        self.assertFalse(result.is_available)
        self.assertEqual(result.failed_models, ["ECMWF"])

    def test_models_without_daily_series_are_unavailable(self):
        forecasts = [_forecast("gem_seamless"), _forecast("gfs_seamless")]
        for f in forecasts:
            f.daily = []
        result = calculate_consensus(forecasts, now_seconds=NOW_S)
        self.assertFalse(result.is_available)
        self.assertEqual(result.metrics.overall, 0)

    def test_uneven_series_lengths_use_available_models(self):
        forecasts = [_forecast("gem_seamless", hours=2), _forecast("gfs_seamless", hours=4)]
        result = calculate_consensus(forecasts, now_seconds=NOW_S)
        self.assertEqual(len(result.hourly), 4)
        self.assertFalse(result.hourly[3].temperature.available)
        self.assertEqual(result.hourly[3].overall_agreement, 0)

    def test_freshness_never_changes_agreement(self):
        forecasts = [
            _forecast("gem_seamless", run_availability_time=NOW_S - 3600),
            _forecast("gfs_seamless", run_availability_time=NOW_S - 20 * 3600),
        ]
        result = calculate_consensus(forecasts, now_seconds=NOW_S, config=Settings())

        self.assertTrue(result.freshness.has_metadata)
        self.assertGreater(result.freshness.freshness_penalty, 0)
        self.assertEqual(result.freshness.stale_model_ids, ["gfs_seamless"])
        self.assertEqual(result.metrics.overall, 100)

    def test_result_serializes(self):
        result = calculate_consensus([_forecast("gem_seamless"), _forecast("icon_seamless")], now_seconds=NOW_S)
        data = result.model_dump()
        self.assertEqual(data["metrics"]["overall"], 100)
        self.assertIn("freshness", data)


class TestConfidenceLevel(unittest.TestCase):
    def test_thresholds(self):
        self.assertEqual(get_confidence_level(75).color, ConfidenceColor.HIGH)
        self.assertEqual(get_confidence_level(74.9).color, ConfidenceColor.MEDIUM)
        self.assertEqual(get_confidence_level(50).label, "Moderate Confidence")
        self.assertEqual(get_confidence_level(10).color, ConfidenceColor.LOW)
        self.assertEqual(get_confidence_level(None).color, ConfidenceColor.LOW)

    def test_returns_copies(self):
        level = get_confidence_level(90)
        level.label = "changed"
        self.assertEqual(get_confidence_level(90).label, "High Confidence")


if __name__ == "__main__":
    unittest.main()
