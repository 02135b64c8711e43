"""
Turns the assistant's parsed JSON reply into calendar operations.

The LLM proposes new events and refers to existing ones by title. This module
validates the proposals, finds the event each update refers to and works out
the final field values to patch, keeping whatever the user did not ask to
change.
"""
from datetime import datetime, timedelta
from difflib import SequenceMatcher
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(hours=1)
FUZZY_MATCH_THRESHOLD = 0.6
TOKEN_OVERLAP_THRESHOLD = 0.5

_STOPWORDS = {"a", "an", "the", "my", "with", "to", "of", "and", "for", "on", "at", "in", "event"}


class UpdateResolutionError(Exception):
    pass


def get_zone(name):
    """Return a ZoneInfo for an IANA name, or None if it isn't one."""
    if not name or not isinstance(name, str):
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_valid_timezone(name) -> bool:
    return get_zone(name) is not None


def parse_datetime(value, tz=None):
    """
    Parse an ISO 8601 date or datetime into an aware datetime.

    Naive values (and bare dates) are read as wall-clock time in ``tz``.
    Returns None for anything that isn't ISO 8601.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s[-1:] in ("Z", "z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None and tz is not None:
        dt = dt.replace(tzinfo=tz)
    return dt


def event_bounds(event: dict, tz):
    """(start, end, all_day) for a Google event dict."""
    start = event.get("start") or {}
    end = event.get("end") or {}
    all_day = "date" in start and "dateTime" not in start
    start_dt = parse_datetime(start.get("dateTime") or start.get("date"), tz)
    end_dt = parse_datetime(end.get("dateTime") or end.get("date"), tz)
    return start_dt, end_dt, all_day


def describe_event(event: dict, tz) -> dict:
    """Compact form of an event used as context for the assistant."""
    start_dt, end_dt, all_day = event_bounds(event, tz)
    described = {
        "id": event.get("id"),
        "title": event.get("summary") or "(untitled)",
        "allDay": all_day,
    }
    if all_day:
        described["start"] = start_dt.date().isoformat() if start_dt else None
        described["end"] = end_dt.date().isoformat() if end_dt else None
    else:
        described["start"] = start_dt.astimezone(tz).isoformat() if start_dt and tz else (start_dt.isoformat() if start_dt else None)
        described["end"] = end_dt.astimezone(tz).isoformat() if end_dt and tz else (end_dt.isoformat() if end_dt else None)
    return described


def normalize_proposals(data: dict, tz) -> list:
    """
    Validate the events the assistant wants to create.

    Accepts both ``{"events": [...]}`` and the single-event shape
    ``{"title", "start", "end"}``. A proposal needs a title and a parseable
    start; a missing or inverted end becomes start + 1 hour.
    """
    raw = data.get("events")
    if not isinstance(raw, list):
        raw = []
    if not raw and data.get("title") and data.get("start"):
        raw = [data]

    proposals = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        start = parse_datetime(item.get("start"), tz)
        if not title or start is None:
            logger.warning(f"Dropping incomplete event proposal: {item}")
            continue
        end = parse_datetime(item.get("end"), tz)
        if end is None or end <= start:
            end = start + DEFAULT_EVENT_DURATION

        proposal = {"title": title, "start": start.isoformat(), "end": end.isoformat()}
        description = str(item.get("description") or "").strip()
        if description:
            proposal["description"] = description
        proposals.append(proposal)
    return proposals


def extract_updates(data: dict) -> list:
    raw = data.get("updates")
    if not isinstance(raw, list):
        return []
    return [u for u in raw if isinstance(u, dict) and (u.get("eventId") or u.get("eventTitle"))]


def _normalize_title(value) -> str:
    return " ".join(str(value or "").lower().split())


def _tokens(value: str) -> set:
    return {t for t in re.findall(r"[a-z0-9]+", value) if t not in _STOPWORDS}


def title_match_score(reference: str, title: str):
    """
    Score how well ``reference`` names ``title``; higher tuples are better.

    Exact matches beat substrings, substrings beat word overlap and word
    overlap beats plain string similarity. None means no match.
    """
    ref = _normalize_title(reference)
    candidate = _normalize_title(title)
    if not ref or not candidate:
        return None
    if ref == candidate:
        return (4, 1.0)
    if ref in candidate or candidate in ref:
        shorter, longer = sorted((len(ref), len(candidate)))
        return (3, shorter / longer)

    ref_tokens = _tokens(ref)
    if ref_tokens:
        overlap = len(ref_tokens & _tokens(candidate)) / len(ref_tokens)
        if overlap >= TOKEN_OVERLAP_THRESHOLD:
            return (2, overlap)

    ratio = SequenceMatcher(None, ref, candidate).ratio()
    if ratio >= FUZZY_MATCH_THRESHOLD:
        return (1, ratio)
    return None


def _proximity_key(event: dict, now, tz):
    # Ongoing/upcoming events first (soonest first), then past events (most recent first)
    start_dt, end_dt, _ = event_bounds(event, tz)
    if start_dt is None:
        return (2, 0)
    if (end_dt or start_dt) >= now:
        return (0, abs((start_dt - now).total_seconds()))
    return (1, (now - start_dt).total_seconds())


def match_event(reference, events: list, now, tz=None, event_id=None):
    """Find the existing event an update refers to, by id or by title."""
    if event_id:
        for event in events:
            if event.get("id") == event_id:
                return event

    scored = []
    for event in events:
        score = title_match_score(reference, event.get("summary"))
        if score is not None:
            scored.append((score, event))
    if not scored:
        return None

    best = max(score for score, _ in scored)
    tied = [event for score, event in scored if score == best]
    return min(tied, key=lambda e: _proximity_key(e, now, tz))


def resolve_update(update: dict, event: dict, tz) -> dict:
    """
    Merge the requested changes with the matched event.

    A new start without an end keeps the event's duration; a new end without
    a start keeps its start. Raises UpdateResolutionError when the request
    can't be applied.
    """
    start_dt, end_dt, all_day = event_bounds(event, tz)
    new_start = parse_datetime(update.get("start"), tz)
    new_end = parse_datetime(update.get("end"), tz)

    if update.get("start") and new_start is None:
        raise UpdateResolutionError(f"I couldn't understand the new start time for '{event.get('summary')}'.")
    if update.get("end") and new_end is None:
        raise UpdateResolutionError(f"I couldn't understand the new end time for '{event.get('summary')}'.")

    if new_start and not new_end:
        duration = (end_dt - start_dt) if (start_dt and end_dt and end_dt > start_dt) else DEFAULT_EVENT_DURATION
        new_end = new_start + duration
    elif new_end and not new_start:
        if start_dt is None:
            raise UpdateResolutionError(f"I couldn't tell when '{event.get('summary')}' starts.")
        new_start = start_dt

    if new_start and new_end and new_end <= new_start:
        raise UpdateResolutionError(f"The new end time for '{event.get('summary')}' is before its start.")

    title = str(update.get("title") or "").strip() or None
    description = update.get("description")
    if description is not None:
        description = str(description)

    if not (title or description is not None or new_start):
        raise UpdateResolutionError(f"No changes were requested for '{event.get('summary')}'.")

    return {
        "eventId": event.get("id"),
        "calendarId": event.get("calendarId", "primary"),
        "title": title,
        "start": new_start.isoformat() if new_start else None,
        "end": new_end.isoformat() if new_end else None,
        "description": description,
        "allDay": all_day,
    }


def summarize(proposals: list, applied: list, failed: list, data: dict):
    """Return (action, message) describing what the chat turn produced."""
    if applied and proposals:
        action = "both"
        if len(proposals) == 1:
            message = "I've updated the event and prepared a new one for you:"
        else:
            message = f"I've updated the event(s) and prepared {len(proposals)} new event(s) for you:"
    elif applied:
        action = "update"
        message = f"I've updated {len(applied)} event(s)."
    elif proposals:
        action = "create"
        if len(proposals) == 1:
            message = "I've prepared this event for you:"
        else:
            message = f"I've prepared {len(proposals)} events for you:"
    else:
        action = "none"
        message = ""

    if failed:
        failure_text = " ".join(f["reason"] for f in failed)
        message = f"{message} {failure_text}".strip()

    if not message:
        message = data.get("error") or data.get("reply") or "I couldn't understand that request."
    return action, message
