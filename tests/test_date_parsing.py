"""
Tests for flexible donation date parsing and date format inference.
"""

import pytest

from donor_import.core.config import settings
from donor_import.utils.date import detect_date_column, infer_date_format, parse_flexible_date


class TestParseFlexibleDate:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-09-04", "2024-09-04"),
            ("2024-09-04T23:09:18Z", "2024-09-04"),
            ("10/20/2025", "2025-10-20"),
            ("20/10/2025", "2025-10-20"),
            ("3/4/24", "2024-03-04"),
            ("March 3, 2024", "2024-03-03"),
            ("3 Mar 2024", "2024-03-03"),
        ],
    )
    def test_supported_formats(self, value, expected):
        assert parse_flexible_date(value) == expected

    def test_forced_formats(self):
        assert parse_flexible_date("03/04/2024", date_format="EU") == "2024-04-03"
        assert parse_flexible_date("03/04/2024", date_format="US") == "2024-03-04"
        assert parse_flexible_date("25/12/2023", date_format="US") is None

    def test_ambiguous_dates_use_configured_default(self, monkeypatch):
        assert parse_flexible_date("03/04/2024", date_format="mixed") == "2024-03-04"
        monkeypatch.setattr(settings, "date_default_dayfirst", True)
        assert parse_flexible_date("03/04/2024", date_format="mixed") == "2024-04-03"

    @pytest.mark.parametrize("value", [None, "", "   ", float("nan")])
    def test_empty_values(self, value):
        assert parse_flexible_date(value) is None

    def test_unparseable_value(self):
        assert parse_flexible_date("sometime last spring", log_failures=False) is None


def test_detect_date_column():
    assert detect_date_column(["2024-01-01", "03/04/2024", "n/a"]) is True
    assert detect_date_column(["Ada", "Grace"]) is False
    assert detect_date_column([]) is False


@pytest.mark.parametrize(
    "values, expected",
    [
        (["2024-01-05", "2023-12-31"], "ISO"),
        (["25/12/2023", "03/04/2024"], "EU"),
        (["12/25/2023", "03/04/2024"], "US"),
        (["25/12/2023", "12/25/2023"], "mixed"),
        (["03/04/2024"], "mixed"),
        ([], "mixed"),
    ],
)
def test_infer_date_format(values, expected):
    assert infer_date_format(values) == expected
