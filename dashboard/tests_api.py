from django.test import TestCase
from django.contrib.auth.models import User
from django.urls import reverse, reverse_lazy
from unittest.mock import patch
from allauth.account.signals import user_signed_up
from dashboard.models import Task, UserPreference
from dashboard.services.calendar_service import GoogleAccountNotConnected
import json
import uuid


class ApiTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', email='test@example.com', password='password')
        self.other = User.objects.create_user(username='other', email='other@example.com', password='password')
        self.client.force_login(self.user)

    def send(self, method, url, data=None):
        return getattr(self.client, method)(url, json.dumps(data or {}), content_type='application/json')


class TaskApiTests(ApiTestCase):
    url = reverse_lazy('dashboard:tasks')

    def test_create_task_with_defaults(self):
        response = self.send('post', self.url, {'title': 'Write report', 'estimatedDuration': '45', 'date': '2026-11-02'})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['title'], 'Write report')
        self.assertEqual(data['priority'], 'Medium')
        self.assertEqual(data['estimatedDuration'], 45)
        self.assertEqual(data['date'], '2026-11-02')
        self.assertFalse(data['scheduled'])
        self.assertEqual(Task.objects.get(id=data['id']).user, self.user)

    def test_create_task_validation(self):
        self.assertEqual(self.send('post', self.url, {'priority': 'High'}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'priority': 'Urgent'}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'estimatedDuration': 'soon'}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'estimatedDuration': 1.5}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'estimatedDuration': '1.5'}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'estimatedDuration': True}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'estimatedDuration': -5}).status_code, 400)
        self.assertEqual(self.send('post', self.url, {'title': 'x', 'date': 'someday'}).status_code, 400)
        self.assertFalse(Task.objects.exists())

    def test_whole_float_duration_is_accepted(self):
        data = self.send('post', self.url, {'title': 'x', 'estimatedDuration': 30.0}).json()
        self.assertEqual(data['estimatedDuration'], 30)

    def test_datetime_is_stored_as_date(self):
        data = self.send('post', self.url, {'title': 'x', 'date': '2026-11-02T10:00:00Z', 'estimatedDuration': ''}).json()
        self.assertEqual(data['date'], '2026-11-02')
        self.assertIsNone(data['estimatedDuration'])

    def test_list_only_returns_own_tasks(self):
        Task.objects.create(user=self.user, title='mine')
        Task.objects.create(user=self.other, title='theirs')

        response = self.client.get(self.url)

        self.assertEqual([t['title'] for t in response.json()], ['mine'])

    def test_update_task(self):
        task = Task.objects.create(user=self.user, title='Draft', estimated_duration=30)

        response = self.send('put', self.url, {'id': str(task.id), 'scheduled': True, 'date': None, 'priority': 'High', 'userId': self.other.id})

        self.assertEqual(response.status_code, 200)
        task.refresh_from_db()
        self.assertTrue(task.scheduled)
        self.assertEqual(task.priority, 'High')
        self.assertEqual(task.estimated_duration, 30)
        self.assertEqual(task.user, self.user)

    def test_update_requires_id_and_ownership(self):
        task = Task.objects.create(user=self.other, title='theirs')

        self.assertEqual(self.send('put', self.url, {'title': 'x'}).status_code, 400)
        self.assertEqual(self.send('put', self.url, {'id': str(task.id), 'title': 'mine now'}).status_code, 404)
        self.assertEqual(self.send('put', self.url, {'id': 'not-a-uuid'}).status_code, 404)
        task.refresh_from_db()
        self.assertEqual(task.title, 'theirs')

    def test_delete_task(self):
        mine = Task.objects.create(user=self.user, title='mine')
        theirs = Task.objects.create(user=self.other, title='theirs')

        self.assertEqual(self.client.delete(self.url).status_code, 400)
        self.assertEqual(self.client.delete(f"{self.url}?id={theirs.id}").status_code, 404)
        response = self.client.delete(f"{self.url}?id={mine.id}")

        self.assertEqual(response.json(), {'success': True})
        self.assertFalse(Task.objects.filter(id=mine.id).exists())
        self.assertTrue(Task.objects.filter(id=theirs.id).exists())

    def test_requires_login(self):
        self.client.logout()
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {'error': 'Unauthorized'})


class ScheduleTaskTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        UserPreference.objects.create(user=self.user, timezone='Europe/London')
        self.task = Task.objects.create(user=self.user, title='Deep work', estimated_duration=90)
        self.url = reverse('dashboard:schedule_task', args=[self.task.id])

    @patch('dashboard.views.GoogleCalendarService')
    def test_schedule_uses_estimated_duration(self, MockGCalService):
        MockGCalService.return_value.create_event.return_value = {'id': 'evt9'}

        response = self.send('post', self.url, {'start': '2026-10-20T09:00:00'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['event'], {'id': 'evt9'})
        MockGCalService.return_value.create_event.assert_called_once_with(
            'primary', 'Deep work', '2026-10-20T09:00:00+01:00', '2026-10-20T10:30:00+01:00',
            description='Dragged from Tasks', tz_name='Europe/London',
        )
        self.task.refresh_from_db()
        self.assertTrue(self.task.scheduled)

    @patch('dashboard.views.GoogleCalendarService')
    def test_failed_create_leaves_task_unscheduled(self, MockGCalService):
        MockGCalService.return_value.create_event.side_effect = Exception("quota")

        response = self.send('post', self.url, {'start': '2026-10-20T09:00:00'})

        self.assertEqual(response.status_code, 500)
        self.task.refresh_from_db()
        self.assertFalse(self.task.scheduled)

    def test_schedule_validation(self):
        self.assertEqual(self.send('post', self.url, {'start': 'after lunch'}).status_code, 400)
        missing = reverse('dashboard:schedule_task', args=[uuid.uuid4()])
        self.assertEqual(self.send('post', missing, {'start': '2026-10-20T09:00:00'}).status_code, 404)


class PreferencesApiTests(ApiTestCase):
    url = reverse_lazy('dashboard:preferences')

    def test_defaults_without_creating_row(self):
        response = self.client.get(self.url)

        self.assertEqual(response.json(), {
            'selectedCalendarIds': ['primary'],
            'theme': 'system',
            'timezone': 'America/New_York',
        })
        self.assertFalse(UserPreference.objects.exists())

    def test_put_upserts(self):
        response = self.send('put', self.url, {'selectedCalendarIds': ['primary', 'work@group.calendar.google.com'], 'theme': 'dark'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['theme'], 'dark')
        prefs = UserPreference.objects.get(user=self.user)
        self.assertEqual(prefs.selected_calendar_ids, ['primary', 'work@group.calendar.google.com'])

        self.send('put', self.url, {'timezone': 'Asia/Tokyo'})
        prefs.refresh_from_db()
        self.assertEqual(prefs.timezone, 'Asia/Tokyo')
        self.assertEqual(prefs.theme, 'dark')

    def test_put_validation(self):
        self.assertEqual(self.send('put', self.url, {'theme': 'purple'}).status_code, 400)
        self.assertEqual(self.send('put', self.url, {'timezone': 'Mars/Olympus'}).status_code, 400)
        self.assertEqual(self.send('put', self.url, {'selectedCalendarIds': 'primary'}).status_code, 400)
        self.assertFalse(UserPreference.objects.exists())

    def test_signup_creates_preferences(self):
        user_signed_up.send(sender=User, request=None, user=self.other)
        self.assertTrue(UserPreference.objects.filter(user=self.other).exists())


class CalendarApiTests(ApiTestCase):
    url = reverse_lazy('dashboard:calendar_events')

    @patch('dashboard.views.GoogleCalendarService')
    def test_list_events_uses_selected_calendars(self, MockGCalService):
        UserPreference.objects.create(user=self.user, selected_calendar_ids=['primary', 'family'])
        MockGCalService.return_value.list_events_for_calendars.return_value = [{'id': 'e1'}]

        response = self.client.get(self.url, {'start': '2026-10-19T00:00:00Z', 'end': '2026-10-26T00:00:00Z'})

        self.assertEqual(response.json(), [{'id': 'e1'}])
        MockGCalService.return_value.list_events_for_calendars.assert_called_once_with(
            ['primary', 'family'], '2026-10-19T00:00:00Z', '2026-10-26T00:00:00Z')

    @patch('dashboard.views.GoogleCalendarService')
    def test_list_events_with_explicit_calendars(self, MockGCalService):
        MockGCalService.return_value.list_events_for_calendars.return_value = []

        self.client.get(self.url, {'start': 'a', 'end': 'b', 'calendarIds': 'x,y'})

        MockGCalService.return_value.list_events_for_calendars.assert_called_once_with(['x', 'y'], 'a', 'b')

    @patch('dashboard.views.GoogleCalendarService')
    def test_list_events_requires_range(self, MockGCalService):
        response = self.client.get(self.url, {'start': '2026-10-19T00:00:00Z'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Start and end dates required')

    @patch('dashboard.views.GoogleCalendarService')
    def test_create_event(self, MockGCalService):
        MockGCalService.return_value.create_event.return_value = {'id': 'new'}

        response = self.send('post', self.url, {'title': 'Lunch', 'start': 's', 'end': 'e', 'description': 'd'})

        self.assertEqual(response.json(), {'id': 'new'})
        MockGCalService.return_value.create_event.assert_called_once_with(
            'primary', 'Lunch', 's', 'e', description='d', tz_name='America/New_York')

    @patch('dashboard.views.GoogleCalendarService')
    def test_create_event_validation(self, MockGCalService):
        self.assertEqual(self.send('post', self.url, {'title': 'Lunch', 'start': 's'}).status_code, 400)
        MockGCalService.return_value.create_event.assert_not_called()

    @patch('dashboard.views.GoogleCalendarService')
    def test_update_event(self, MockGCalService):
        MockGCalService.return_value.patch_event.return_value = {'id': 'e1'}

        self.assertEqual(self.send('put', self.url, {'title': 'x'}).status_code, 400)
        response = self.send('put', self.url, {'id': 'e1', 'start': '2026-10-20', 'end': '2026-10-21', 'allDay': True, 'calendarId': 'family'})

        self.assertEqual(response.status_code, 200)
        MockGCalService.return_value.patch_event.assert_called_once_with(
            'family', 'e1', title=None, start='2026-10-20', end='2026-10-21',
            description=None, all_day=True, tz_name='America/New_York')

    @patch('dashboard.views.GoogleCalendarService')
    def test_delete_event(self, MockGCalService):
        self.assertEqual(self.client.delete(self.url).status_code, 400)

        response = self.client.delete(f"{self.url}?id=e1")

        self.assertEqual(response.json(), {'success': True})
        MockGCalService.return_value.delete_event.assert_called_once_with('primary', 'e1')

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.logger')
    def test_google_errors_become_500(self, mock_logger, MockGCalService):
        MockGCalService.return_value.delete_event.side_effect = Exception("410 Gone")

        response = self.client.delete(f"{self.url}?id=e1")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'Failed to delete event')
        mock_logger.error.assert_called()

    @patch('dashboard.views.GoogleCalendarService')
    def test_not_connected(self, MockGCalService):
        MockGCalService.side_effect = GoogleAccountNotConnected('No Google account connected.')

        response = self.client.get(self.url, {'start': 'a', 'end': 'b'})

        self.assertEqual(response.status_code, 401)
        self.assertIn('connectUrl', response.json())

    @patch('dashboard.views.GoogleCalendarService')
    def test_calendar_list(self, MockGCalService):
        MockGCalService.return_value.list_calendars.return_value = [{'id': 'primary', 'summary': 'Me'}]

        response = self.client.get(reverse('dashboard:calendar_list'))

        self.assertEqual(response.json(), [{'id': 'primary', 'summary': 'Me'}])


class DashboardPageTests(ApiTestCase):
    def test_renders_with_preferences(self):
        UserPreference.objects.create(user=self.user, theme='dark')

        response = self.client.get(reverse('dashboard:dashboard'))

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, 'id="preferences"')
        self.assertContains(response, 'data-theme="dark"')

    def test_anonymous_is_redirected(self):
        self.client.logout()
        response = self.client.get(reverse('dashboard:dashboard'))
        self.assertRedirects(response, f"{reverse('landing')}?next={reverse('dashboard:dashboard')}")
