from datetime import datetime, timezone
from allauth.socialaccount.models import SocialToken
from django.conf import settings
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from google.auth.transport.requests import Request
import logging

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Raised with a user-facing message when the Calendar API can't be used."""


class GoogleAccountNotConnected(CalendarServiceError):
    pass


def event_start_key(event: dict) -> str:
    start = event.get('start', {}) or {}
    return start.get('dateTime') or start.get('date') or ''


def to_rfc3339(value) -> str:
    """Normalize a datetime or ISO string into the RFC3339 form the API expects."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.isoformat()
    value = str(value)
    if value.endswith('+00:00'):
        value = value[:-6] + 'Z'
    return value


def naive_utc(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class GoogleCalendarService:
    def __init__(self, user):
        token = SocialToken.objects.filter(account__user=user, account__provider='google').select_related('app').first()
        if token is None:
            raise GoogleAccountNotConnected('No Google account connected. Please sign in with Google again.')

        try:
            social_app = token.app  # null when the app is configured in settings
            creds = Credentials(  # building credentials with the stored tokens and client_id/secret
                token=token.token,
                refresh_token=token.token_secret or None,
                token_uri='https://oauth2.googleapis.com/token',
                client_id=social_app.client_id if social_app else settings.GOOGLE_CLIENT_ID,
                client_secret=social_app.secret if social_app else settings.GOOGLE_CLIENT_SECRET,
                expiry=naive_utc(token.expires_at),  # google-auth compares expiry against naive UTC
            )
        except Exception as e:
            logger.error(f"Failed to initialize Google Calendar service: {e}", exc_info=True)
            raise CalendarServiceError('Failed to initialize Google Calendar service. Please try again later.')

        if not creds.valid:
            if creds.refresh_token:
                try:
                    creds.refresh(Request())
                except Exception as e:
                    logger.error(f"Failed to refresh Google credentials: {e}", exc_info=True)
                    raise GoogleAccountNotConnected('Your Google connection expired. Please reconnect your Google account.')
                token.token = creds.token
                if creds.expiry:
                    token.expires_at = creds.expiry.replace(tzinfo=timezone.utc)
                token.save()
            elif creds.expired:
                # Cannot refresh without a refresh token; caller must reconnect
                raise GoogleAccountNotConnected('Your Google connection expired and no refresh token is on file. Please reconnect your Google account.')

        self.creds = creds
        try:
            self.service = build('calendar', 'v3', credentials=self.creds, cache_discovery=False)
        except Exception as e:
            logger.error(f"Failed to initialize Google Calendar service: {e}", exc_info=True)
            raise CalendarServiceError('Failed to initialize Google Calendar service. Please try again later.')

    def list_events(self, calendar_id='primary', time_min=None, time_max=None):
        return self.service.events().list(
            calendarId=calendar_id,
            timeMin=to_rfc3339(time_min) if time_min else None,
            timeMax=to_rfc3339(time_max) if time_max else None,
            singleEvents=True,
            orderBy='startTime'
        ).execute().get('items', [])

    def list_events_for_calendars(self, calendar_ids, time_min, time_max):
        """
        Aggregate events from several calendars.

        A calendar that fails to load is logged and skipped so the rest of the
        view still renders. Every event is tagged with its ``calendarId``.
        """
        all_events = []
        for calendar_id in calendar_ids or ['primary']:
            try:
                items = self.list_events(calendar_id, time_min, time_max)
            except Exception as e:
                logger.error(f"Failed to fetch events for calendar {calendar_id}: {e}")
                continue
            for item in items:
                item['calendarId'] = calendar_id
                all_events.append(item)

        all_events.sort(key=event_start_key)
        return all_events

    def list_calendars(self):
        return self.service.calendarList().list(minAccessRole='reader').execute().get('items', [])

    @staticmethod
    def build_event_body(title, start, end, description=None, tz_name=None):
        body = {
            'summary': title,
            'start': {'dateTime': start},
            'end': {'dateTime': end},
        }
        if description:
            body['description'] = description
        if tz_name:
            body['start']['timeZone'] = tz_name
            body['end']['timeZone'] = tz_name
        return body

    def create_event(self, calendar_id, title, start, end, description=None, tz_name=None):
        event_body = self.build_event_body(title, start, end, description, tz_name)
        return self.service.events().insert(calendarId=calendar_id, body=event_body).execute()

    def get_event(self, calendar_id, event_id):
        return self.service.events().get(calendarId=calendar_id, eventId=event_id).execute()

    def patch_event(self, calendar_id, event_id, title=None, start=None, end=None,
                    description=None, all_day=None, tz_name=None):
        """
        Patch an event, keeping whatever the caller leaves out.

        Start and end only change when both are given. The event stays all-day
        if it already was, unless ``all_day`` says otherwise.
        """
        existing = None
        try:
            existing = self.get_event(calendar_id, event_id)
        except Exception as e:
            logger.error(f"Failed to fetch existing event {event_id}: {e}")

        body = {}
        if title is not None:
            body['summary'] = title
        elif existing and existing.get('summary'):
            body['summary'] = existing['summary']

        if description is not None:
            body['description'] = description
        elif existing and existing.get('description'):
            body['description'] = existing['description']

        if start and end:
            was_all_day = bool(existing and 'date' in (existing.get('start') or {}))
            if all_day if all_day is not None else was_all_day:
                body['start'] = {'date': str(start).split('T')[0]}
                body['end'] = {'date': str(end).split('T')[0]}
            else:
                body['start'] = {'dateTime': start}
                body['end'] = {'dateTime': end}
                if tz_name:
                    body['start']['timeZone'] = tz_name
                    body['end']['timeZone'] = tz_name
        elif existing:
            body['start'] = existing.get('start')
            body['end'] = existing.get('end')

        return self.service.events().patch(calendarId=calendar_id, eventId=event_id, body=body).execute()

    def delete_event(self, calendar_id, event_id):
        return self.service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
