"""Upstream data sources: model forecasts, run metadata and observations."""

from .meteostat_client import ObservationsNotConfigured, fetch_observed_hourly
from .open_meteo_client import fetch_model_forecast, fetch_model_metadata

__all__ = [
    "ObservationsNotConfigured",
    "fetch_model_forecast",
    "fetch_model_metadata",
    "fetch_observed_hourly",
]
