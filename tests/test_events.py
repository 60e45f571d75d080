import unittest
from datetime import datetime, timezone

from calsync.events import MalformedEventError, events_equal, normalize_event
from calsync.models import CalDAVEvent, CanonicalEventData, EventTime, ProviderEvent


def _caldav(**overrides) -> CalDAVEvent:
    payload = {
        "uid": "uid-1",
        "summary": "Lunch",
        "start": datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        "end": datetime(2024, 6, 1, 13, 0, tzinfo=timezone.utc),
        "raw_data": "BEGIN:VEVENT\r\nUID:uid-1\r\nEND:VEVENT\r\n",
    }
    payload.update(overrides)
    return CalDAVEvent(**payload)


class NormalizeCalDAVTests(unittest.TestCase):
    def test_timed_event_uses_utc_timestamps(self) -> None:
        data = normalize_event(_caldav())
        self.assertEqual(data.summary, "Lunch")
        self.assertEqual(data.start.date_time, "2024-06-01T12:00:00.000Z")
        self.assertIsNone(data.start.date)
        self.assertEqual(data.end.date_time, "2024-06-01T13:00:00.000Z")
        self.assertIsNone(data.transparency)
        self.assertIsNone(data.description)

    def test_all_day_event_uses_dates(self) -> None:
        data = normalize_event(
            _caldav(
                all_day=True,
                start=datetime(2024, 6, 1, tzinfo=timezone.utc),
                end=datetime(2024, 6, 2, tzinfo=timezone.utc),
            )
        )
        self.assertEqual(data.start.date, "2024-06-01")
        self.assertEqual(data.end.date, "2024-06-02")
        self.assertIsNone(data.start.date_time)

    def test_transparency_from_raw_payload_and_backslashes_stripped(self) -> None:
        data = normalize_event(
            _caldav(
                summary="Dentist\\, maybe",
                raw_data="BEGIN:VEVENT\r\nTRANSP:TRANSPARENT\r\nEND:VEVENT\r\n",
            )
        )
        self.assertEqual(data.summary, "Dentist, maybe")
        self.assertEqual(data.transparency, "transparent")


class NormalizeProviderTests(unittest.TestCase):
    def test_fields_copy_through(self) -> None:
        event = ProviderEvent.from_api(
            {
                "id": "g1",
                "summary": "Standup",
                "description": "notes",
                "start": {"dateTime": "2024-06-01T09:00:00+02:00", "timeZone": "Europe/Paris"},
                "end": {"dateTime": "2024-06-01T09:15:00+02:00"},
                "transparency": "transparent",
            }
        )
        data = normalize_event(event)
        self.assertEqual(data.summary, "Standup")
        self.assertEqual(data.description, "notes")
        self.assertEqual(data.start.date_time, "2024-06-01T09:00:00+02:00")
        self.assertEqual(data.start.time_zone, "Europe/Paris")
        self.assertEqual(data.transparency, "transparent")

    def test_opaque_transparency_is_absent(self) -> None:
        event = ProviderEvent(
            id="g1",
            summary="Busy",
            start=EventTime(date="2024-06-01"),
            end=EventTime(date="2024-06-02"),
            transparency="opaque",
        )
        self.assertIsNone(normalize_event(event).transparency)

    def test_missing_start_raises(self) -> None:
        event = ProviderEvent(id="g1", summary="Broken", start=EventTime(), end=EventTime(date="2024-06-02"))
        with self.assertRaises(MalformedEventError):
            normalize_event(event)

    def test_unknown_event_type_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            normalize_event({"id": "x"})


class EventsEqualTests(unittest.TestCase):
    def _data(self, **overrides) -> CanonicalEventData:
        payload = {
            "summary": "Lunch",
            "start": EventTime(date_time="2024-06-01T12:00:00.000Z"),
            "end": EventTime(date_time="2024-06-01T13:00:00.000Z"),
        }
        payload.update(overrides)
        return CanonicalEventData(**payload)

    def test_end_and_description_are_ignored(self) -> None:
        a = self._data(description="one")
        b = self._data(description="two", end=EventTime(date_time="2024-06-01T15:00:00.000Z"))
        self.assertTrue(events_equal(a, b))

    def test_same_instant_in_other_offset_is_equal(self) -> None:
        a = self._data()
        b = self._data(start=EventTime(date_time="2024-06-01T14:00:00+02:00"))
        self.assertTrue(events_equal(a, b))

    def test_date_and_datetime_never_equal(self) -> None:
        a = self._data(start=EventTime(date="2024-06-01"))
        b = self._data()
        self.assertFalse(events_equal(a, b))
        self.assertFalse(events_equal(b, a))

    def test_summary_and_transparency_differences(self) -> None:
        self.assertFalse(events_equal(self._data(), self._data(summary="Dinner")))
        self.assertFalse(events_equal(self._data(), self._data(transparency="transparent")))
        self.assertTrue(events_equal(self._data(transparency="opaque"), self._data()))


if __name__ == "__main__":
    unittest.main()
