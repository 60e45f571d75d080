import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from calsync.caldav_client import CalDAVService, parse_calendar_data
from calsync.models import SourceConfig
from calsync.recurrence import build_occurrences

RECURRING_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//calsync//tests//EN",
        "BEGIN:VEVENT",
        "UID:weekly-1",
        "SUMMARY:Weekly review",
        "DTSTART:20240527T100000Z",
        "DTEND:20240527T110000Z",
        "RRULE:FREQ=WEEKLY;COUNT=5",
        "EXDATE:20240610T100000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:weekly-1",
        "RECURRENCE-ID:20240603T100000Z",
        "SUMMARY:Weekly review (moved)",
        "DTSTART:20240603T150000Z",
        "DTEND:20240603T160000Z",
        "TRANSP:TRANSPARENT",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)

ALL_DAY_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//calsync//tests//EN",
        "BEGIN:VEVENT",
        "UID:allday-1",
        "SUMMARY:Holiday",
        "DTSTART;VALUE=DATE:20240605",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


FLOATING_WEEKLY_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//calsync//tests//EN",
        "BEGIN:VEVENT",
        "UID:floating-1",
        "SUMMARY:Standup",
        "DTSTART:20240603T100000",
        "DTEND:20240603T103000",
        "RRULE:FREQ=WEEKLY;UNTIL=20240624T100000",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)

ALL_DAY_DAILY_UTC_UNTIL_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//calsync//tests//EN",
        "BEGIN:VEVENT",
        "UID:daily-1",
        "SUMMARY:Offsite",
        "DTSTART;VALUE=DATE:20240603",
        "DTEND;VALUE=DATE:20240604",
        "RRULE:FREQ=DAILY;UNTIL=20240605T215959Z",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)

WINDOW_START = datetime(2024, 6, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 7, 1, tzinfo=timezone.utc)

class ParseCalendarDataTests(unittest.TestCase):
    def test_master_and_override_are_parsed_separately(self) -> None:
        master, override = parse_calendar_data(RECURRING_ICS.encode("utf-8"))

        self.assertEqual(master.uid, "weekly-1")
        self.assertTrue(master.is_recurring)
        self.assertIn("FREQ=WEEKLY", master.rrule)
        self.assertIn("COUNT=5", master.rrule)
        self.assertEqual(master.start, datetime(2024, 5, 27, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(master.end - master.start, timedelta(hours=1))
        self.assertEqual(master.exdates, [datetime(2024, 6, 10, 10, 0, tzinfo=timezone.utc)])
        self.assertIsNone(master.recurrence_id)
        self.assertNotIn("TRANSP:TRANSPARENT", master.raw_data)

        self.assertEqual(override.uid, "weekly-1")
        self.assertFalse(override.is_recurring)
        self.assertEqual(override.recurrence_id, datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(override.start, datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc))
        self.assertIn("TRANSP:TRANSPARENT", override.raw_data)

    def test_all_day_event_without_end(self) -> None:
        (event,) = parse_calendar_data(ALL_DAY_ICS)
        self.assertTrue(event.all_day)
        self.assertEqual(event.start, datetime(2024, 6, 5, tzinfo=timezone.utc))
        self.assertEqual(event.end, datetime(2024, 6, 6, tzinfo=timezone.utc))

    def test_floating_series_with_floating_until_expands(self) -> None:
        (master,) = parse_calendar_data(FLOATING_WEEKLY_ICS)
        self.assertTrue(master.floating)
        self.assertFalse(master.all_day)
        self.assertIn("UNTIL=20240624T100000", master.rrule)

        occurrences = build_occurrences([master], SourceConfig(label="Team"), WINDOW_START, WINDOW_END)

        self.assertEqual(
            [item.event.start for item in occurrences],
            [datetime(2024, 6, day, 10, 0, tzinfo=timezone.utc) for day in (3, 10, 17, 24)],
        )
        self.assertEqual(occurrences[0].event.uid, "floating-1")
        self.assertEqual(occurrences[1].event.end - occurrences[1].event.start, timedelta(minutes=30))

    def test_all_day_series_with_utc_until_expands(self) -> None:
        (master,) = parse_calendar_data(ALL_DAY_DAILY_UTC_UNTIL_ICS)
        self.assertTrue(master.all_day)
        self.assertFalse(master.floating)

        occurrences = build_occurrences([master], SourceConfig(label="Home"), WINDOW_START, WINDOW_END)

        self.assertEqual(
            [item.event.start for item in occurrences],
            [datetime(2024, 6, day, tzinfo=timezone.utc) for day in (3, 4, 5)],
        )
        self.assertTrue(all(item.event.all_day for item in occurrences))


class CalDAVServiceTests(unittest.TestCase):
    def test_fetch_events_asks_for_unexpanded_resources(self) -> None:
        source = SourceConfig(kind="caldav", label="Work", url="https://dav.example.com/cal/", username="u", password="p")
        resource = mock.Mock()
        resource.data = RECURRING_ICS
        start = datetime(2024, 6, 1, tzinfo=timezone.utc)
        end = datetime(2024, 7, 1, tzinfo=timezone.utc)

        with mock.patch("calsync.caldav_client.caldav.DAVClient") as client_cls:
            calendar = client_cls.return_value.calendar.return_value
            calendar.date_search.return_value = [resource]
            events = CalDAVService(source).fetch_events(start, end)

        client_cls.assert_called_once_with(url="https://dav.example.com/cal/", username="u", password="p")
        calendar.date_search.assert_called_once_with(start=start, end=end, expand=False)
        self.assertEqual(len(events), 2)

    def test_incomplete_config_raises(self) -> None:
        with self.assertRaises(RuntimeError):
            CalDAVService(SourceConfig(kind="caldav")).fetch_events(
                datetime(2024, 6, 1, tzinfo=timezone.utc), datetime(2024, 7, 1, tzinfo=timezone.utc)
            )


if __name__ == "__main__":
    unittest.main()
