from datetime import datetime, timedelta, timezone as dt_timezone
from django.test import TestCase
from django.utils import timezone
from unittest.mock import patch, MagicMock
from django.contrib.auth.models import User
from allauth.socialaccount.models import SocialAccount, SocialApp, SocialToken
from google.oauth2.credentials import Credentials
from dashboard.services.calendar_service import (
    CalendarServiceError,
    GoogleAccountNotConnected,
    GoogleCalendarService,
    to_rfc3339,
)


def _bare_service():
    """A service instance with a mocked API client, skipping OAuth setup."""
    service = GoogleCalendarService.__new__(GoogleCalendarService)
    service.service = MagicMock()
    return service


class TestCalendarServiceInit(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', password='password')

    def test_no_token_means_not_connected(self):
        with self.assertRaises(GoogleAccountNotConnected):
            GoogleCalendarService(self.user)

    @patch('dashboard.services.calendar_service.SocialToken')
    @patch('dashboard.services.calendar_service.Credentials')
    @patch('dashboard.services.calendar_service.logger')
    def test_init_error_handling(self, mock_logger, mock_creds, mock_social_token):
        mock_social_token.objects.filter.return_value.select_related.return_value.first.return_value = MagicMock()
        mock_creds.side_effect = Exception("bad client config")

        with self.assertRaises(CalendarServiceError) as cm:
            GoogleCalendarService(self.user)

        self.assertEqual(str(cm.exception), 'Failed to initialize Google Calendar service. Please try again later.')
        mock_logger.error.assert_called()
        args, _ = mock_logger.error.call_args
        self.assertIn("Failed to initialize Google Calendar service: bad client config", args[0])

    def _stored_token(self, expires_at, refresh_token='refresh-token'):
        app = SocialApp.objects.create(provider='google', name='Google', client_id='client-id', secret='client-secret')
        account = SocialAccount.objects.create(user=self.user, provider='google', uid='1234')
        return SocialToken.objects.create(app=app, account=account, token='stale-token',
                                          token_secret=refresh_token, expires_at=expires_at)

    @patch('dashboard.services.calendar_service.build')
    @patch('dashboard.services.calendar_service.Request')
    def test_expired_token_is_refreshed_and_saved(self, mock_request, mock_build):
        token = self._stored_token(timezone.now() - timedelta(hours=2))
        new_expiry = (timezone.now() + timedelta(hours=1)).astimezone(dt_timezone.utc).replace(tzinfo=None, microsecond=0)

        def fake_refresh(creds, request):
            creds.token = 'fresh-token'
            creds.expiry = new_expiry

        with patch.object(Credentials, 'refresh', autospec=True, side_effect=fake_refresh) as mock_refresh:
            service = GoogleCalendarService(self.user)

        mock_refresh.assert_called_once()
        token.refresh_from_db()
        self.assertEqual(token.token, 'fresh-token')
        self.assertEqual(token.expires_at, new_expiry.replace(tzinfo=dt_timezone.utc))
        self.assertEqual(service.creds.client_id, 'client-id')
        mock_build.assert_called_once_with('calendar', 'v3', credentials=service.creds, cache_discovery=False)

    @patch('dashboard.services.calendar_service.build')
    def test_unexpired_token_is_used_as_is(self, mock_build):
        self._stored_token(timezone.now() + timedelta(hours=1))

        with patch.object(Credentials, 'refresh', autospec=True) as mock_refresh:
            service = GoogleCalendarService(self.user)

        mock_refresh.assert_not_called()
        self.assertEqual(service.creds.token, 'stale-token')

    @patch('dashboard.services.calendar_service.build')
    def test_expired_without_refresh_token_asks_to_reconnect(self, mock_build):
        self._stored_token(timezone.now() - timedelta(hours=2), refresh_token='')

        with self.assertRaises(GoogleAccountNotConnected):
            GoogleCalendarService(self.user)
        mock_build.assert_not_called()

    @patch('dashboard.services.calendar_service.build')
    @patch('dashboard.services.calendar_service.Request')
    @patch('dashboard.services.calendar_service.logger')
    def test_failed_refresh_asks_to_reconnect(self, mock_logger, mock_request, mock_build):
        self._stored_token(timezone.now() - timedelta(hours=2))

        with patch.object(Credentials, 'refresh', autospec=True, side_effect=Exception("invalid_grant")):
            with self.assertRaises(GoogleAccountNotConnected):
                GoogleCalendarService(self.user)
        mock_logger.error.assert_called_once()
        mock_build.assert_not_called()


class TestCalendarServiceOperations(TestCase):
    def test_to_rfc3339_uses_z_suffix_for_utc(self):
        self.assertEqual(to_rfc3339('2026-10-19T00:00:00+00:00'), '2026-10-19T00:00:00Z')
        self.assertEqual(to_rfc3339(datetime(2026, 10, 19)), '2026-10-19T00:00:00Z')

    @patch('dashboard.services.calendar_service.logger')
    def test_list_events_for_calendars_skips_failing_calendar(self, mock_logger):
        service = _bare_service()
        items = {
            'primary': [{'id': 'b', 'start': {'dateTime': '2026-10-20T10:00:00Z'}}],
            'work': [{'id': 'a', 'start': {'date': '2026-10-19'}}],
        }

        def fake_list(calendarId, **kwargs):
            if calendarId == 'broken':
                raise Exception("403 Forbidden")
            request = MagicMock()
            request.execute.return_value = {'items': items[calendarId]}
            return request

        service.service.events.return_value.list.side_effect = fake_list

        events = service.list_events_for_calendars(['primary', 'broken', 'work'], '2026-10-19T00:00:00Z', '2026-10-26T00:00:00Z')

        self.assertEqual([e['id'] for e in events], ['a', 'b'])
        self.assertEqual(events[0]['calendarId'], 'work')
        self.assertEqual(events[1]['calendarId'], 'primary')
        mock_logger.error.assert_called_once()

    def test_list_calendars_requests_reader_access(self):
        service = _bare_service()
        service.service.calendarList.return_value.list.return_value.execute.return_value = {'items': [{'id': 'primary'}]}

        self.assertEqual(service.list_calendars(), [{'id': 'primary'}])
        service.service.calendarList.return_value.list.assert_called_once_with(minAccessRole='reader')

    def test_create_event_uses_timezone(self):
        service = _bare_service()
        service.create_event('primary', 'Lunch', '2026-10-20T12:00:00-04:00', '2026-10-20T13:00:00-04:00',
                             description='with Sam', tz_name='America/New_York')

        service.service.events.return_value.insert.assert_called_once_with(calendarId='primary', body={
            'summary': 'Lunch',
            'description': 'with Sam',
            'start': {'dateTime': '2026-10-20T12:00:00-04:00', 'timeZone': 'America/New_York'},
            'end': {'dateTime': '2026-10-20T13:00:00-04:00', 'timeZone': 'America/New_York'},
        })

    def test_patch_event_keeps_existing_fields(self):
        service = _bare_service()
        events = service.service.events.return_value
        events.get.return_value.execute.return_value = {
            'summary': 'Dentist', 'description': 'Bring card',
            'start': {'dateTime': '2026-10-20T09:00:00-04:00'},
            'end': {'dateTime': '2026-10-20T10:00:00-04:00'},
        }

        service.patch_event('primary', 'evt1', title='Dentist (moved)')

        events.patch.assert_called_once_with(calendarId='primary', eventId='evt1', body={
            'summary': 'Dentist (moved)',
            'description': 'Bring card',
            'start': {'dateTime': '2026-10-20T09:00:00-04:00'},
            'end': {'dateTime': '2026-10-20T10:00:00-04:00'},
        })

    def test_patch_event_keeps_all_day_events_all_day(self):
        service = _bare_service()
        events = service.service.events.return_value
        events.get.return_value.execute.return_value = {
            'summary': 'Holiday', 'start': {'date': '2026-10-20'}, 'end': {'date': '2026-10-21'},
        }

        service.patch_event('primary', 'evt1', start='2026-10-22T00:00:00-04:00', end='2026-10-23T00:00:00-04:00')

        body = events.patch.call_args.kwargs['body']
        self.assertEqual(body['start'], {'date': '2026-10-22'})
        self.assertEqual(body['end'], {'date': '2026-10-23'})

    @patch('dashboard.services.calendar_service.logger')
    def test_patch_event_still_patches_when_fetch_fails(self, mock_logger):
        service = _bare_service()
        events = service.service.events.return_value
        events.get.return_value.execute.side_effect = Exception("404")

        service.patch_event('primary', 'evt1', start='2026-10-22T09:00:00Z', end='2026-10-22T10:00:00Z', tz_name='UTC')

        body = events.patch.call_args.kwargs['body']
        self.assertEqual(body, {
            'start': {'dateTime': '2026-10-22T09:00:00Z', 'timeZone': 'UTC'},
            'end': {'dateTime': '2026-10-22T10:00:00Z', 'timeZone': 'UTC'},
        })
        mock_logger.error.assert_called_once()
