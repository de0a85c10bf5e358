#!/usr/bin/env python3
"""
Demo script for the Weather Data API.
Walks the station, observation and yearly statistics endpoints of a running server.

    weather-pipeline --data-dir wx_data --calculate-stats
    weather-pipeline --api-only
    python demo.py
"""

import os
import sys
import json

import requests

API_BASE = os.getenv('API_BASE', "http://localhost:5000")
TIMEOUT = 10


def print_header(title):
    print("\n" + "="*60)
    print(f"  {title}")
    print("="*60)


def print_section(title):
    print(f"\n--- {title} ---")


def get(path, **params):
    r = requests.get(f"{API_BASE}{path}", params=params, timeout=TIMEOUT)
    r.raise_for_status()
    return r.json()


def show_health():
    print_section("Health Check")
    print(get("/api/health"))


def show_stations():
    print_section("Stations")
    data = get("/api/stations/", per_page=5)
    print(json.dumps(data['data'], indent=2))
    print(f"{data['pagination']['total']} stations in total")
    return [s['station_id'] for s in data['data']]


def show_observations(station_id):
    print_section(f"Observations for {station_id}")
    data = get("/api/weather/", station_id=station_id, per_page=5)
    for obs in data['data']:
        print(f"{obs['observation_date']} max={obs['max_temperature_celsius']} "
              f"min={obs['min_temperature_celsius']} precip_cm={obs['precipitation_cm']}")


def show_statistics(station_id):
    print_section(f"Yearly statistics for {station_id}")
    data = get("/api/weather/stats", station_id=station_id, per_page=5)
    for stat in data['data']:
        print(f"{stat['year']}: avg_max={stat['avg_max_temperature_celsius']} "
              f"avg_min={stat['avg_min_temperature_celsius']} "
              f"total_precip_cm={stat['total_precipitation_cm']} "
              f"({stat['valid_max_temp_count']}/{stat['observation_count']} max readings)")


def main():
    print_header("Weather Data API Demo")
    print(f"Using the API server at {API_BASE}")
    try:
        show_health()
        station_ids = show_stations()
        if station_ids:
            show_observations(station_ids[0])
            show_statistics(station_ids[0])
    except requests.RequestException as e:
        print(f"\nRequest failed: {e}")
        sys.exit(1)
    print("\nDemo complete.")


if __name__ == "__main__":
    main()
