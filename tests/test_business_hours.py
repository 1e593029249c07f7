from datetime import datetime
from zoneinfo import ZoneInfo

from ticobot.services.business_hours import BusinessHours

CR = ZoneInfo("America/Costa_Rica")


class TestIsOpen:
    def test_open_during_default_hours(self):
        hours = BusinessHours()
        assert hours.is_open(datetime(2026, 3, 4, 10, 0, tzinfo=CR)) is True

    def test_closed_before_opening(self):
        hours = BusinessHours()
        assert hours.is_open(datetime(2026, 3, 4, 7, 59, tzinfo=CR)) is False

    def test_closing_minute_is_inclusive(self):
        hours = BusinessHours()
        assert hours.is_open(datetime(2026, 3, 4, 19, 0, tzinfo=CR)) is True

    def test_sunday_uses_key_zero(self):
        # 2026-03-01 is a Sunday
        hours = BusinessHours({"0": {"open": "10:00", "close": "12:00"}})
        assert hours.is_open(datetime(2026, 3, 1, 11, 0, tzinfo=CR)) is True
        assert hours.is_open(datetime(2026, 3, 2, 11, 0, tzinfo=CR)) is False

    def test_malformed_day_is_closed(self):
        hours = BusinessHours({"3": {"open": "later"}})
        assert hours.is_open(datetime(2026, 3, 4, 10, 0, tzinfo=CR)) is False

    def test_converts_to_local_timezone(self):
        hours = BusinessHours()
        # 15:00 UTC is 09:00 in Costa Rica
        assert hours.is_open(datetime(2026, 3, 4, 15, 0, tzinfo=ZoneInfo("UTC"))) is True


class TestUpdate:
    def test_merges_schedule(self):
        hours = BusinessHours()
        hours.update(schedule={"6": {"open": "09:00", "close": "12:00"}})
        assert hours.schedule["6"] == {"open": "09:00", "close": "12:00"}
        assert hours.schedule["1"] == {"open": "08:00", "close": "19:00"}

    def test_unknown_timezone_falls_back(self):
        hours = BusinessHours(timezone="Mars/Olympus")
        assert hours.tz == CR


class TestDescribe:
    def test_weekdays_first(self):
        hours = BusinessHours({"1": {"open": "08:00", "close": "17:00"}, "0": {"open": "09:00", "close": "12:00"}})
        assert hours.describe() == "Lun 08:00-17:00, Dom 09:00-12:00"

    def test_empty(self):
        hours = BusinessHours()
        hours.schedule = {}
        assert hours.describe() == "Horario no disponible"
