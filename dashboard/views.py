from datetime import datetime, timedelta
from functools import wraps
from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import render
from django.urls import reverse
from django.views.decorators.http import require_GET, require_http_methods, require_POST
from .models import Task, UserPreference
from .services.ai_agent import AIAgent, AssistantUnavailable, ChatParseError
from .services.calendar_service import CalendarServiceError, GoogleAccountNotConnected, GoogleCalendarService
from .services.chat_actions import (
    DEFAULT_EVENT_DURATION,
    UpdateResolutionError,
    extract_updates,
    get_zone,
    match_event,
    normalize_proposals,
    parse_datetime,
    resolve_update,
    summarize,
)
import json
import logging
import uuid

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    pass


def api_login_required(view):
    """Like login_required, but answers API callers with a 401 instead of a redirect."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({'error': 'Unauthorized'}, status=401)
        return view(request, *args, **kwargs)
    return wrapper


def _json_body(request) -> dict:
    try:
        data = json.loads(request.body or b'{}')
    except (ValueError, UnicodeDecodeError):
        raise BadRequest('Invalid JSON body')
    if not isinstance(data, dict):
        raise BadRequest('Invalid JSON body')
    return data


def _not_connected_response(message):
    return JsonResponse({
        'error': message,
        'connectUrl': reverse('connect_google') + f"?next={reverse('dashboard:dashboard')}",
    }, status=401)


def _preferences_for(user):
    return UserPreference.objects.filter(user=user).first()


def _preferences_dict(user) -> dict:
    prefs = _preferences_for(user)
    return prefs.as_dict() if prefs else UserPreference.defaults_as_dict()


def _user_timezone(user) -> str:
    tz_name = _preferences_dict(user)['timezone']
    return tz_name if get_zone(tz_name) else 'UTC'


def _parse_uuid(value):
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Dashboard page
# ---------------------------------------------------------------------------

@login_required
def dashboard(request):
    prefs = _preferences_dict(request.user)
    context = {
        "preferences": prefs,
        "theme": prefs["theme"],
        "user_email": request.user.email,
    }
    return render(request, "dashboard/dashboard.html", context)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

@api_login_required
@require_http_methods(["GET", "POST", "PUT", "DELETE"])
def calendar_events(request):
    try:
        gcal = GoogleCalendarService(request.user)
    except GoogleAccountNotConnected as e:
        return _not_connected_response(str(e))
    except CalendarServiceError as e:
        return JsonResponse({'error': str(e)}, status=500)

    handler = {
        'GET': _list_events,
        'POST': _create_event,
        'PUT': _update_event,
        'DELETE': _delete_event,
    }[request.method]

    try:
        return handler(request, gcal)
    except BadRequest as e:
        return JsonResponse({'error': str(e)}, status=400)


def _list_events(request, gcal):
    start = request.GET.get('start')
    end = request.GET.get('end')
    if not start or not end:
        raise BadRequest('Start and end dates required')

    calendar_ids_param = request.GET.get('calendarIds')
    if calendar_ids_param:
        calendar_ids = [c for c in calendar_ids_param.split(',') if c]
    else:
        calendar_ids = _preferences_dict(request.user)['selectedCalendarIds']

    try:
        events = gcal.list_events_for_calendars(calendar_ids, start, end)
    except Exception as e:
        logger.error(f"Calendar API error: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to fetch events'}, status=500)
    return JsonResponse(events, safe=False)


def _create_event(request, gcal):
    data = _json_body(request)
    title = str(data.get('title') or '').strip()
    start = data.get('start')
    end = data.get('end')
    if not title or not start or not end:
        raise BadRequest('Title, start and end are required')

    try:
        event = gcal.create_event(
            data.get('calendarId') or 'primary',
            title,
            start,
            end,
            description=data.get('description'),
            tz_name=_user_timezone(request.user),
        )
    except Exception as e:
        logger.error(f"Calendar create error: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to create event'}, status=500)
    logger.info(f"User {request.user.username} created event {event.get('id')}")
    return JsonResponse(event)


def _update_event(request, gcal):
    data = _json_body(request)
    event_id = data.get('id')
    if not event_id:
        raise BadRequest('Event ID is required')

    try:
        event = gcal.patch_event(
            data.get('calendarId') or 'primary',
            event_id,
            title=data.get('title'),
            start=data.get('start'),
            end=data.get('end'),
            description=data.get('description'),
            all_day=data.get('allDay'),
            tz_name=_user_timezone(request.user),
        )
    except Exception as e:
        logger.error(f"Calendar update error: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to update event'}, status=500)
    return JsonResponse(event)


def _delete_event(request, gcal):
    event_id = request.GET.get('id')
    if not event_id:
        raise BadRequest('Event ID is required')

    try:
        gcal.delete_event(request.GET.get('calendarId') or 'primary', event_id)
    except Exception as e:
        logger.error(f"Calendar delete error: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to delete event'}, status=500)
    logger.info(f"User {request.user.username} deleted event {event_id}")
    return JsonResponse({'success': True})


@api_login_required
@require_GET
def calendar_list(request):
    try:
        gcal = GoogleCalendarService(request.user)
        calendars = gcal.list_calendars()
    except GoogleAccountNotConnected as e:
        return _not_connected_response(str(e))
    except Exception as e:
        logger.error(f"Calendar list API error: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to fetch calendars'}, status=500)
    return JsonResponse(calendars, safe=False)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@api_login_required
@require_POST
def chat(request):
    try:
        data = _json_body(request)
    except BadRequest as e:
        return JsonResponse({'error': str(e)}, status=400)

    user_input = str(data.get('message') or '').strip()
    if not user_input:
        return JsonResponse({'error': 'Message is required'}, status=400)

    history = data.get('conversationHistory')
    if not isinstance(history, list):
        history = []

    # Client-reported IANA timezone wins over the stored preference
    tz_name = data.get('timezone') if get_zone(data.get('timezone')) else _user_timezone(request.user)
    tz = get_zone(tz_name)
    now = datetime.now(tz)

    agent = AIAgent(request.user)
    if not agent.is_configured:
        return JsonResponse({'error': 'The assistant is not configured.'}, status=503)

    try:
        gcal = GoogleCalendarService(request.user)
    except GoogleAccountNotConnected as e:
        return _not_connected_response(str(e))
    except CalendarServiceError as e:
        return JsonResponse({'error': str(e)}, status=500)

    # Existing events give the model something to match update requests against
    window_start = now - timedelta(days=getattr(settings, 'CHAT_EVENT_WINDOW_PAST_DAYS', 7))
    window_end = now + timedelta(days=getattr(settings, 'CHAT_EVENT_WINDOW_FUTURE_DAYS', 30))
    calendar_ids = _preferences_dict(request.user)['selectedCalendarIds']
    existing_events = gcal.list_events_for_calendars(calendar_ids, window_start, window_end)

    try:
        reply = agent.handle(user_input, history=history, events=existing_events, tz_name=tz_name, now=now)
    except AssistantUnavailable as e:
        return JsonResponse({'error': str(e)}, status=503)
    except ChatParseError as e:
        return JsonResponse({'error': str(e)}, status=500)
    except Exception as e:
        logger.error(f"Error in chat API: {e}", exc_info=True)
        return JsonResponse({'error': 'Internal Server Error'}, status=500)

    proposals = normalize_proposals(reply, tz)
    applied, failed = _apply_updates(gcal, extract_updates(reply), existing_events, now, tz, tz_name)

    action, message = summarize(proposals, applied, failed, reply)
    logger.info(f"Chat turn for {request.user.username}: action={action}, proposals={len(proposals)}, updates={len(applied)}, failed={len(failed)}")
    return JsonResponse({
        'action': action,
        'message': message,
        'events': proposals,
        'updates': applied,
        'failedUpdates': failed,
    })


def _apply_updates(gcal, updates, existing_events, now, tz, tz_name):
    """Match each requested update to an event and patch it right away."""
    applied, failed = [], []
    for update in updates:
        reference = update.get('eventTitle') or update.get('eventId')
        event = match_event(update.get('eventTitle'), existing_events, now, tz, event_id=update.get('eventId'))
        if event is None:
            failed.append({'reference': reference, 'reason': f"I couldn't find an event matching '{reference}'."})
            continue

        try:
            resolved = resolve_update(update, event, tz)
        except UpdateResolutionError as e:
            failed.append({'reference': reference, 'reason': str(e)})
            continue

        try:
            gcal.patch_event(
                resolved['calendarId'],
                resolved['eventId'],
                title=resolved['title'],
                start=resolved['start'],
                end=resolved['end'],
                description=resolved['description'],
                all_day=resolved['allDay'],
                tz_name=tz_name,
            )
        except Exception as e:
            logger.error(f"Failed to update event {resolved['eventId']}: {e}", exc_info=True)
            failed.append({'reference': reference, 'reason': f"I couldn't update '{event.get('summary')}'."})
            continue
        applied.append(resolved)
    return applied, failed


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def _parse_task_date(value):
    if value in (None, ''):
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise BadRequest('Invalid date')
    return parsed.date()


def _parse_duration(value):
    if value in (None, ''):
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise BadRequest('estimatedDuration must be a whole number of minutes')
    try:
        minutes = int(value)
    except (ValueError, TypeError):
        raise BadRequest('estimatedDuration must be a whole number of minutes')
    if minutes <= 0:
        raise BadRequest('estimatedDuration must be positive')
    return minutes


def _parse_task_fields(data: dict) -> dict:
    """Map the camelCase task payload onto model fields, validating as we go."""
    fields = {}
    if 'title' in data:
        title = str(data.get('title') or '').strip()
        if not title:
            raise BadRequest('Title is required')
        fields['title'] = title
    if 'priority' in data:
        priority = data.get('priority') or 'Medium'
        if priority not in dict(Task.PRIORITY_CHOICES):
            raise BadRequest('Priority must be High, Medium or Low')
        fields['priority'] = priority
    if 'date' in data:
        fields['date'] = _parse_task_date(data.get('date'))
    if 'estimatedDuration' in data:
        fields['estimated_duration'] = _parse_duration(data.get('estimatedDuration'))
    if 'scheduled' in data:
        fields['scheduled'] = bool(data.get('scheduled'))
    return fields


@api_login_required
@require_http_methods(["GET", "POST", "PUT", "DELETE"])
def tasks(request):
    try:
        if request.method == 'GET':
            return JsonResponse([t.as_dict() for t in Task.objects.filter(user=request.user)], safe=False)

        if request.method == 'DELETE':
            task = _get_owned_task(request.user, request.GET.get('id'))
            if task is None:
                return JsonResponse({'error': 'Task not found'}, status=404)
            task.delete()
            return JsonResponse({'success': True})

        data = _json_body(request)
        if request.method == 'POST':
            if not str(data.get('title') or '').strip():
                raise BadRequest('Title is required')
            fields = _parse_task_fields(data)
            fields.pop('scheduled', None)
            task = Task.objects.create(user=request.user, **fields)
            logger.info(f"User {request.user.username} created task {task.id}")
            return JsonResponse(task.as_dict())

        task = _get_owned_task(request.user, data.get('id'))
        if task is None:
            return JsonResponse({'error': 'Task not found'}, status=404)
        for name, value in _parse_task_fields(data).items():
            setattr(task, name, value)
        task.save()
        return JsonResponse(task.as_dict())

    except BadRequest as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Task {request.method} failed for {request.user.username}: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to save task'}, status=500)


def _get_owned_task(user, task_id):
    if not task_id:
        raise BadRequest('Task ID is required')
    parsed = _parse_uuid(task_id)
    if parsed is None:
        return None
    return Task.objects.filter(id=parsed, user=user).first()


@api_login_required
@require_POST
def schedule_task(request, task_id):
    """Put a task on the calendar (dropped onto a time slot) and mark it scheduled."""
    task = Task.objects.filter(id=task_id, user=request.user).first()
    if task is None:
        return JsonResponse({'error': 'Task not found'}, status=404)

    try:
        data = _json_body(request)
    except BadRequest as e:
        return JsonResponse({'error': str(e)}, status=400)

    tz_name = _user_timezone(request.user)
    tz = get_zone(tz_name)
    start = parse_datetime(data.get('start'), tz)
    if start is None:
        return JsonResponse({'error': 'A valid start is required'}, status=400)
    end = parse_datetime(data.get('end'), tz)
    if end is None or end <= start:
        duration = timedelta(minutes=task.estimated_duration) if task.estimated_duration else DEFAULT_EVENT_DURATION
        end = start + duration

    try:
        gcal = GoogleCalendarService(request.user)
        event = gcal.create_event('primary', task.title, start.isoformat(), end.isoformat(),
                                  description='Dragged from Tasks', tz_name=tz_name)
    except GoogleAccountNotConnected as e:
        return _not_connected_response(str(e))
    except Exception as e:
        logger.error(f"Failed to create event from task {task.id}: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to create event'}, status=500)

    task.scheduled = True
    task.save(update_fields=['scheduled', 'updated_at'])
    return JsonResponse({'event': event, 'task': task.as_dict()})


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

@api_login_required
@require_http_methods(["GET", "PUT"])
def preferences(request):
    if request.method == 'GET':
        return JsonResponse(_preferences_dict(request.user))

    try:
        data = _json_body(request)
        updates = {}
        if 'selectedCalendarIds' in data:
            ids = data['selectedCalendarIds']
            if not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids):
                raise BadRequest('selectedCalendarIds must be a list of calendar ids')
            updates['selected_calendar_ids'] = ids
        if 'theme' in data:
            if data['theme'] not in dict(UserPreference.THEME_CHOICES):
                raise BadRequest('Theme must be light, dark or system')
            updates['theme'] = data['theme']
        if 'timezone' in data:
            if not get_zone(data['timezone']):
                raise BadRequest('Unknown timezone')
            updates['timezone'] = data['timezone']
    except BadRequest as e:
        return JsonResponse({'error': str(e)}, status=400)

    try:
        prefs, created = UserPreference.objects.update_or_create(user=request.user, defaults=updates)
    except Exception as e:
        logger.error(f"Failed to update user preferences: {e}", exc_info=True)
        return JsonResponse({'error': 'Failed to update user preferences'}, status=500)
    return JsonResponse(prefs.as_dict())
