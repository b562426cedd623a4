"""Tests for toolbelt/telemetry.py."""

from __future__ import annotations

from toolbelt.telemetry import is_plotter_data, parse_numeric_data, parse_sensor_data


class TestParseSensorData:
    def test_temperature_and_humidity(self):
        assert parse_sensor_data("temp:25.3 humidity:60.2") == {"temperature": 25.3, "humidity": 60.2}

    def test_all_fields(self):
        data = parse_sensor_data("Temperature=-4.5 Humidity: 40% pressure 1013.2 motion: detected distance: 12.5cm")
        assert data == {
            "temperature": -4.5,
            "humidity": 40.0,
            "pressure": 1013.2,
            "motion": True,
            "distance": 12.5,
            "distance_unit": "cm",
        }

    def test_motion_false_is_kept(self):
        assert parse_sensor_data("motion: none") == {"motion": False}

    def test_distance_without_unit(self):
        assert parse_sensor_data("distance=7") == {"distance": 7.0}

    def test_nothing(self):
        assert parse_sensor_data("hello world") == {}


class TestPlotterData:
    def test_comma_separated(self):
        assert parse_numeric_data("1.5,2,-3") == [1.5, 2.0, -3.0]

    def test_mixed_separators_and_units(self):
        assert parse_numeric_data("12, 3.5\t-7 ok 4V") == [12.0, 3.5, -7.0, 4.0]

    def test_exponent_and_leading_dot(self):
        assert parse_numeric_data("1e3 .5") == [1000.0, 0.5]

    def test_labelled_field_is_not_numeric(self):
        assert parse_numeric_data("temp:21.5") == []

    def test_empty_line(self):
        assert parse_numeric_data("   ") == []

    def test_plotter_needs_two_values(self):
        assert is_plotter_data("512 498") is True
        assert is_plotter_data("512") is False
        assert is_plotter_data("Ready") is False
