# app/models/domain/calendar_domain.py
"""
Calendar Domain Models
Parses raw Google Calendar event resources as stored by the sync stage.
Fields of the wrong type are treated as absent.
"""

from datetime import UTC, datetime


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value) -> str:
    return value if isinstance(value, str) else ""


class CalendarEvent:
    """Domain model for a Google Calendar event resource."""

    def __init__(self, data: dict):
        self.id = _as_str(data.get("id")) or None
        self.summary = _as_str(data.get("summary"))
        self.description = _as_str(data.get("description"))
        self.start_time = self._parse_datetime(_as_dict(data.get("start")))
        self.end_time = self._parse_datetime(_as_dict(data.get("end")))
        self.status = _as_str(data.get("status")) or "confirmed"
        attendees = data.get("attendees")
        self.attendees = attendees if isinstance(attendees, list) else []
        self.organizer = _as_dict(data.get("organizer"))
        self.location = _as_str(data.get("location"))
        self.html_link = _as_str(data.get("htmlLink")) or None
        self.updated = self._parse_datetime_iso(data.get("updated"))
        self.raw_data = data

    def _parse_datetime(self, dt_data: dict) -> datetime | None:
        """Parse datetime from Google Calendar format."""
        if not dt_data:
            return None

        # All-day events carry a date only
        if "date" in dt_data:
            try:
                return datetime.strptime(dt_data["date"], "%Y-%m-%d").replace(tzinfo=UTC)
            except (TypeError, ValueError):
                return None

        if "dateTime" in dt_data:
            return self._parse_datetime_iso(dt_data["dateTime"])

        return None

    def _parse_datetime_iso(self, dt_str) -> datetime | None:
        if not isinstance(dt_str, str) or not dt_str:
            return None
        try:
            parsed = datetime.fromisoformat(dt_str.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)

    def is_all_day(self) -> bool:
        return "date" in _as_dict(self.raw_data.get("start"))

    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def get_participants(self) -> list[dict[str, str]]:
        """Organizer first, then attendees (resources and rooms excluded)."""
        participants = []
        if _as_str(self.organizer.get("email")):
            participants.append(
                {
                    "email": self.organizer["email"],
                    "name": _as_str(self.organizer.get("displayName")),
                    "role": "organizer",
                    "is_self": bool(self.organizer.get("self")),
                }
            )
        for attendee in self.attendees:
            if not isinstance(attendee, dict) or not _as_str(attendee.get("email")):
                continue
            if attendee.get("resource"):
                continue
            participants.append(
                {
                    "email": attendee["email"],
                    "name": _as_str(attendee.get("displayName")),
                    "role": "attendee",
                    "is_self": bool(attendee.get("self")),
                }
            )
        return participants
