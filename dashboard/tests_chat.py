from datetime import datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo
from django.conf import settings
from django.test import TestCase, SimpleTestCase
from django.contrib.auth.models import User
from django.urls import reverse
from unittest.mock import patch
from dashboard.services.ai_agent import (
    AIAgent,
    AssistantUnavailable,
    ChatParseError,
    extract_last_json,
    normalize_history,
)
from dashboard.models import UserPreference
from dashboard.services.calendar_service import GoogleAccountNotConnected
from dashboard.services.chat_actions import (
    UpdateResolutionError,
    match_event,
    normalize_proposals,
    resolve_update,
    summarize,
    title_match_score,
)
import json
import os

NY = ZoneInfo('America/New_York')


def _event(event_id, summary, start, end, calendar_id='primary'):
    return {
        'id': event_id, 'summary': summary, 'calendarId': calendar_id,
        'start': {'dateTime': start}, 'end': {'dateTime': end},
    }


class ChatViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', email='test@example.com', password='password')
        self.client.force_login(self.user)
        self.url = reverse('dashboard:chat')
        self.existing = [
            _event('evt1', 'Dentist appointment', '2026-10-20T09:00:00-04:00', '2026-10-20T10:00:00-04:00'),
            _event('evt2', 'Team standup', '2026-10-20T10:00:00-04:00', '2026-10-20T10:15:00-04:00', 'work'),
        ]

    def _post(self, message='Move my dentist to Wednesday at 3pm', **extra):
        data = {'message': message, 'timezone': 'America/New_York', **extra}
        return self.client.post(self.url, json.dumps(data), content_type='application/json')

    def _mock_agent(self, MockAIAgent, reply):
        agent = MockAIAgent.return_value
        agent.is_configured = True
        agent.handle.return_value = reply
        return agent

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_update_is_matched_by_title_and_applied(self, MockAIAgent, MockGCalService):
        mock_service = MockGCalService.return_value
        mock_service.list_events_for_calendars.return_value = self.existing
        self._mock_agent(MockAIAgent, {
            'action': 'update',
            'updates': [{'eventTitle': 'dentist', 'start': '2026-10-21T15:00:00-04:00'}],
        })

        response = self._post()

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['action'], 'update')
        self.assertEqual(data['message'], "I've updated 1 event(s).")
        self.assertEqual(data['events'], [])
        # original one hour duration is kept
        mock_service.patch_event.assert_called_once_with(
            'primary', 'evt1',
            title=None,
            start='2026-10-21T15:00:00-04:00',
            end='2026-10-21T16:00:00-04:00',
            description=None,
            all_day=False,
            tz_name='America/New_York',
        )

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_create_proposals_are_returned_not_written(self, MockAIAgent, MockGCalService):
        mock_service = MockGCalService.return_value
        mock_service.list_events_for_calendars.return_value = []
        self._mock_agent(MockAIAgent, {
            'action': 'create',
            'events': [
                {'title': 'Gym', 'start': '2026-10-20T18:00:00'},
                {'title': '', 'start': '2026-10-20T19:00:00'},
            ],
        })

        data = self._post('Gym tomorrow at 6pm').json()

        self.assertEqual(data['action'], 'create')
        self.assertEqual(data['message'], "I've prepared this event for you:")
        self.assertEqual(data['events'], [
            {'title': 'Gym', 'start': '2026-10-20T18:00:00-04:00', 'end': '2026-10-20T19:00:00-04:00'},
        ])
        mock_service.create_event.assert_not_called()
        mock_service.patch_event.assert_not_called()

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_update_and_create_in_one_message(self, MockAIAgent, MockGCalService):
        mock_service = MockGCalService.return_value
        mock_service.list_events_for_calendars.return_value = self.existing
        self._mock_agent(MockAIAgent, {
            'action': 'both',
            'events': [{'title': 'Retro', 'start': '2026-10-22T14:00:00-04:00', 'end': '2026-10-22T15:00:00-04:00'}],
            'updates': [{'eventId': 'evt2', 'eventTitle': 'standup', 'title': 'Daily standup'}],
        })

        data = self._post('Rename standup to Daily standup and add a retro Thursday at 2').json()

        self.assertEqual(data['action'], 'both')
        self.assertEqual(data['message'], "I've updated the event and prepared a new one for you:")
        self.assertEqual(data['updates'][0]['calendarId'], 'work')
        args, kwargs = mock_service.patch_event.call_args
        self.assertEqual(args, ('work', 'evt2'))
        self.assertEqual(kwargs['title'], 'Daily standup')
        self.assertIsNone(kwargs['start'])

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_unmatched_update_is_reported(self, MockAIAgent, MockGCalService):
        mock_service = MockGCalService.return_value
        mock_service.list_events_for_calendars.return_value = self.existing
        self._mock_agent(MockAIAgent, {
            'action': 'update',
            'updates': [{'eventTitle': 'yoga', 'start': '2026-10-21T07:00:00-04:00'}],
        })

        data = self._post('Move yoga to 7am').json()

        self.assertEqual(data['action'], 'none')
        self.assertEqual(len(data['failedUpdates']), 1)
        self.assertIn("I couldn't find an event matching 'yoga'", data['message'])
        mock_service.patch_event.assert_not_called()

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_failed_patch_is_reported(self, MockAIAgent, MockGCalService):
        mock_service = MockGCalService.return_value
        mock_service.list_events_for_calendars.return_value = self.existing
        mock_service.patch_event.side_effect = Exception("500 backendError")
        self._mock_agent(MockAIAgent, {
            'updates': [{'eventTitle': 'Dentist appointment', 'title': 'Dentist'}],
        })

        data = self._post().json()

        self.assertEqual(data['action'], 'none')
        self.assertEqual(data['updates'], [])
        self.assertIn("I couldn't update 'Dentist appointment'", data['message'])

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_reply_is_used_when_nothing_actionable(self, MockAIAgent, MockGCalService):
        MockGCalService.return_value.list_events_for_calendars.return_value = []
        self._mock_agent(MockAIAgent, {'action': 'none', 'reply': 'Hello! What should I schedule?'})

        data = self._post('hi').json()

        self.assertEqual(data['action'], 'none')
        self.assertEqual(data['message'], 'Hello! What should I schedule?')

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_context_passed_to_agent(self, MockAIAgent, MockGCalService):
        MockGCalService.return_value.list_events_for_calendars.return_value = self.existing
        agent = self._mock_agent(MockAIAgent, {'action': 'none'})
        history = [{'role': 'user', 'content': 'hi'}, {'role': 'assistant', 'content': 'Hello!'}]

        self._post('What about Friday?', conversationHistory=history)

        args, kwargs = agent.handle.call_args
        self.assertEqual(args, ('What about Friday?',))
        self.assertEqual(kwargs['history'], history)
        self.assertEqual(kwargs['events'], self.existing)
        self.assertEqual(kwargs['tz_name'], 'America/New_York')
        calendar_ids, window_start, window_end = MockGCalService.return_value.list_events_for_calendars.call_args.args
        self.assertEqual(calendar_ids, ['primary'])
        self.assertEqual(window_end - window_start, timedelta(days=37))

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_unknown_timezone_falls_back_to_preference(self, MockAIAgent, MockGCalService):
        UserPreference.objects.create(user=self.user, timezone='Europe/Berlin')
        MockGCalService.return_value.list_events_for_calendars.return_value = []
        agent = self._mock_agent(MockAIAgent, {'action': 'none'})

        self._post('Lunch tomorrow', timezone='Mars/Olympus')

        self.assertEqual(agent.handle.call_args.kwargs['tz_name'], 'Europe/Berlin')
        self.assertEqual(str(agent.handle.call_args.kwargs['now'].tzinfo), 'Europe/Berlin')

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.services.ai_agent.Anthropic')
    def test_follow_up_sends_assistant_question_to_model(self, MockAnthropic, MockGCalService):
        MockGCalService.return_value.list_events_for_calendars.return_value = []
        MockAnthropic.return_value.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type='text', text='{"action": "none", "message": "Booked."}')]
        )
        history = [
            {'role': 'user', 'content': 'Book lunch with Sam'},
            {'role': 'assistant', 'content': 'Which day?'},
        ]

        with patch.dict('os.environ', {'CLAUDE_API_KEY': 'test-key'}):
            response = self._post('Friday', conversationHistory=history)

        self.assertEqual(response.status_code, 200)
        messages = MockAnthropic.return_value.messages.create.call_args.kwargs['messages']
        self.assertEqual(messages, [
            {'role': 'user', 'content': 'Book lunch with Sam'},
            {'role': 'assistant', 'content': 'Which day?'},
            {'role': 'user', 'content': 'Friday'},
        ])

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_unparseable_reply_is_server_error(self, MockAIAgent, MockGCalService):
        MockGCalService.return_value.list_events_for_calendars.return_value = []
        agent = self._mock_agent(MockAIAgent, {})
        agent.handle.side_effect = ChatParseError("Failed to parse event details")

        response = self._post('something')

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'Failed to parse event details')

    @patch('dashboard.views.AIAgent')
    def test_assistant_not_configured(self, MockAIAgent):
        MockAIAgent.return_value.is_configured = False

        response = self._post('Lunch tomorrow')

        self.assertEqual(response.status_code, 503)

    @patch('dashboard.views.GoogleCalendarService')
    @patch('dashboard.views.AIAgent')
    def test_google_not_connected(self, MockAIAgent, MockGCalService):
        MockAIAgent.return_value.is_configured = True
        MockGCalService.side_effect = GoogleAccountNotConnected('No Google account connected.')

        response = self._post('Lunch tomorrow')

        self.assertEqual(response.status_code, 401)
        self.assertIn('/connect/google/', response.json()['connectUrl'])

    def test_empty_message_is_rejected(self):
        response = self._post('   ')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Message is required')

    def test_requires_login(self):
        self.client.logout()
        response = self._post('Lunch tomorrow')
        self.assertEqual(response.status_code, 401)


class ProposalNormalizationTests(SimpleTestCase):
    def test_missing_end_defaults_to_one_hour(self):
        proposals = normalize_proposals({'events': [{'title': 'Call mom', 'start': '2026-10-20T17:00:00Z'}]}, NY)
        self.assertEqual(proposals[0]['end'], '2026-10-20T18:00:00+00:00')

    def test_end_before_start_defaults_to_one_hour(self):
        proposals = normalize_proposals({'events': [
            {'title': 'Late show', 'start': '2026-10-20T23:00:00-04:00', 'end': '2026-10-20T01:00:00-04:00'},
        ]}, NY)
        self.assertEqual(proposals[0]['end'], '2026-10-21T00:00:00-04:00')

    def test_drops_incomplete_and_keeps_description(self):
        proposals = normalize_proposals({'events': [
            {'title': 'Review', 'start': 'next tuesday'},
            {'start': '2026-10-20T09:00:00'},
            {'title': 'Plan', 'start': '2026-10-20T09:00:00', 'end': '2026-10-20T09:30:00', 'description': ' Q4 '},
            'garbage',
        ]}, NY)
        self.assertEqual(proposals, [{
            'title': 'Plan', 'start': '2026-10-20T09:00:00-04:00', 'end': '2026-10-20T09:30:00-04:00', 'description': 'Q4',
        }])

    def test_single_event_shape_is_accepted(self):
        proposals = normalize_proposals({'title': 'Dinner', 'start': '2026-10-20T19:00:00-04:00', 'end': '2026-10-20T21:00:00-04:00'}, NY)
        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0]['title'], 'Dinner')


class EventMatchingTests(SimpleTestCase):
    def setUp(self):
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=NY)

    def test_score_tiers(self):
        self.assertGreater(title_match_score('standup', 'Standup'), title_match_score('standup', 'Team standup'))
        self.assertGreater(title_match_score('standup', 'Team standup'), title_match_score('team sync', 'Team weekly sync'))
        self.assertIsNotNone(title_match_score('standup', 'Stand-up sync'))
        self.assertIsNone(title_match_score('lunch', 'Team sync'))

    def test_exact_title_beats_substring(self):
        events = [
            _event('a', 'Team standup', '2026-10-20T10:00:00-04:00', '2026-10-20T10:15:00-04:00'),
            _event('b', 'Standup', '2026-10-25T10:00:00-04:00', '2026-10-25T10:15:00-04:00'),
        ]
        self.assertEqual(match_event('standup', events, self.now, NY)['id'], 'b')

    def test_ties_prefer_the_next_upcoming_event(self):
        events = [
            _event('past', 'Gym', '2026-10-18T18:00:00-04:00', '2026-10-18T19:00:00-04:00'),
            _event('later', 'Gym', '2026-10-23T18:00:00-04:00', '2026-10-23T19:00:00-04:00'),
            _event('next', 'Gym', '2026-10-20T18:00:00-04:00', '2026-10-20T19:00:00-04:00'),
        ]
        self.assertEqual(match_event('gym', events, self.now, NY)['id'], 'next')

    def test_event_id_wins_over_title(self):
        events = [
            _event('a', 'Gym', '2026-10-20T18:00:00-04:00', '2026-10-20T19:00:00-04:00'),
            _event('b', 'Dinner', '2026-10-20T20:00:00-04:00', '2026-10-20T21:00:00-04:00'),
        ]
        self.assertEqual(match_event('gym', events, self.now, NY, event_id='b')['id'], 'b')

    def test_no_match(self):
        events = [_event('a', 'Gym', '2026-10-20T18:00:00-04:00', '2026-10-20T19:00:00-04:00')]
        self.assertIsNone(match_event('board meeting', events, self.now, NY))
        self.assertIsNone(match_event('', events, self.now, NY))


class ResolveUpdateTests(SimpleTestCase):
    def setUp(self):
        self.event = _event('evt1', 'Dentist', '2026-10-20T09:00:00-04:00', '2026-10-20T09:45:00-04:00')

    def test_new_start_keeps_duration(self):
        resolved = resolve_update({'start': '2026-10-22T14:00:00-04:00'}, self.event, NY)
        self.assertEqual(resolved['end'], '2026-10-22T14:45:00-04:00')
        self.assertFalse(resolved['allDay'])

    def test_new_end_keeps_start(self):
        resolved = resolve_update({'end': '2026-10-20T10:30:00-04:00'}, self.event, NY)
        self.assertEqual(resolved['start'], '2026-10-20T09:00:00-04:00')
        self.assertEqual(resolved['end'], '2026-10-20T10:30:00-04:00')

    def test_naive_times_are_read_in_user_timezone(self):
        resolved = resolve_update({'start': '2026-10-22T14:00:00'}, self.event, NY)
        self.assertEqual(resolved['start'], '2026-10-22T14:00:00-04:00')

    def test_all_day_event_stays_all_day(self):
        event = {'id': 'h', 'summary': 'Holiday', 'start': {'date': '2026-10-20'}, 'end': {'date': '2026-10-21'}}
        resolved = resolve_update({'start': '2026-10-23'}, event, NY)
        self.assertTrue(resolved['allDay'])
        self.assertTrue(resolved['end'].startswith('2026-10-24'))

    def test_rejects_bad_requests(self):
        with self.assertRaises(UpdateResolutionError):
            resolve_update({'start': 'half past three'}, self.event, NY)
        with self.assertRaises(UpdateResolutionError):
            resolve_update({'start': '2026-10-20T12:00:00-04:00', 'end': '2026-10-20T11:00:00-04:00'}, self.event, NY)
        with self.assertRaises(UpdateResolutionError):
            resolve_update({'eventTitle': 'Dentist'}, self.event, NY)


class SummarizeTests(SimpleTestCase):
    def test_messages(self):
        proposal = {'title': 'x', 'start': 's', 'end': 'e'}
        self.assertEqual(summarize([proposal, proposal], [], [], {}), ('create', "I've prepared 2 events for you:"))
        self.assertEqual(summarize([proposal, proposal], [{}], [], {}),
                         ('both', "I've updated the event(s) and prepared 2 new event(s) for you:"))
        self.assertEqual(summarize([], [], [], {'error': 'No date given'}), ('none', 'No date given'))
        self.assertEqual(summarize([], [], [], {}), ('none', "I couldn't understand that request."))


class ExtractJsonTests(SimpleTestCase):
    def test_fenced_json(self):
        self.assertEqual(extract_last_json('```json\n{"action": "create"}\n```'), {'action': 'create'})

    def test_prose_and_several_objects_uses_last(self):
        blob = 'Sure! {"action": "none"} and then {"action": "update", "updates": [{"eventTitle": "a {b}"}]}'
        self.assertEqual(extract_last_json(blob)['action'], 'update')

    def test_stray_brace_in_prose_is_skipped(self):
        self.assertEqual(extract_last_json('Sure {here:\n{"action": "none"}'), {'action': 'none'})
        self.assertEqual(extract_last_json('{"action": "create"} then { oops'), {'action': 'create'})

    def test_no_json(self):
        self.assertIsNone(extract_last_json("Sorry, I can't help with that."))
        self.assertIsNone(extract_last_json('[1, 2]'))
        self.assertIsNone(extract_last_json(''))


class NormalizeHistoryTests(SimpleTestCase):
    def test_drops_leading_assistant_and_merges_roles(self):
        history = [
            {'role': 'assistant', 'content': 'Welcome'},
            {'role': 'user', 'content': 'a'},
            {'role': 'user', 'content': 'b'},
            {'role': 'system', 'content': 'ignored'},
            {'role': 'assistant', 'content': ''},
            {'role': 'assistant', 'content': 'c'},
        ]
        self.assertEqual(normalize_history(history, 10), [
            {'role': 'user', 'content': 'a\nb'},
            {'role': 'assistant', 'content': 'c'},
        ])

    def test_limit(self):
        history = [{'role': 'user' if i % 2 == 0 else 'assistant', 'content': str(i)} for i in range(20)]
        turns = normalize_history(history, 4)
        self.assertEqual([t['content'] for t in turns], ['16', '17', '18', '19'])


class AIAgentTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', password='password')
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=NY)

    def _agent(self, MockAnthropic, reply_text):
        MockAnthropic.return_value.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type='text', text=reply_text)]
        )
        with patch.dict('os.environ', {'CLAUDE_API_KEY': 'test-key'}):
            return AIAgent(self.user)

    @patch('dashboard.services.ai_agent.Anthropic')
    def test_handle_builds_prompt_and_parses_reply(self, MockAnthropic):
        agent = self._agent(MockAnthropic, '{"action": "create", "events": []}')
        events = [_event('evt1', 'Dentist', '2026-10-20T13:00:00Z', '2026-10-20T14:00:00Z')]
        history = [{'role': 'user', 'content': 'hi'}]

        result = agent.handle('Lunch at noon', history=history, events=events, tz_name='America/New_York', now=self.now)

        self.assertEqual(result, {'action': 'create', 'events': []})
        kwargs = MockAnthropic.return_value.messages.create.call_args.kwargs
        self.assertEqual(kwargs['temperature'], 0)
        self.assertEqual(kwargs['model'], settings.ANTHROPIC_MODEL)
        self.assertIn('America/New_York', kwargs['system'])
        self.assertIn('Monday', kwargs['system'])
        self.assertIn('"evt1"', kwargs['system'])
        # shown in the user's timezone
        self.assertIn('2026-10-20T09:00:00-04:00', kwargs['system'])
        roles = [m['role'] for m in kwargs['messages']]
        self.assertEqual(roles, ['user', 'assistant', 'user'])
        self.assertEqual(kwargs['messages'][-1]['content'], 'Lunch at noon')

    @patch('dashboard.services.ai_agent.Anthropic')
    def test_prompt_caps_context_events(self, MockAnthropic):
        agent = self._agent(MockAnthropic, '{"action": "none"}')
        events = [
            _event(f'evt{i}', f'Meeting {i}', '2026-10-20T13:00:00Z', '2026-10-20T14:00:00Z')
            for i in range(1, 102)
        ]

        with self.settings(CHAT_MAX_CONTEXT_EVENTS=100):
            agent.handle('What is on Tuesday?', events=events, tz_name='America/New_York', now=self.now)

        system = MockAnthropic.return_value.messages.create.call_args.kwargs['system']
        self.assertIn('"evt100"', system)
        self.assertNotIn('"evt101"', system)

    @patch('dashboard.services.ai_agent.Anthropic')
    def test_handle_raises_on_unparseable_reply(self, MockAnthropic):
        agent = self._agent(MockAnthropic, 'I am not sure what you mean.')
        with self.assertRaises(ChatParseError):
            agent.handle('???', tz_name='America/New_York', now=self.now)

    def test_not_configured_without_api_key(self):
        with patch.dict('os.environ'):
            os.environ.pop('CLAUDE_API_KEY', None)
            os.environ.pop('ANTHROPIC_API_KEY', None)
            agent = AIAgent(self.user)
        self.assertFalse(agent.is_configured)
        with self.assertRaises(AssistantUnavailable):
            agent.handle('Lunch', tz_name='UTC', now=self.now)
