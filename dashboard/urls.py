from django.urls import path
from . import views

app_name = "dashboard"

urlpatterns = [
    path("dashboard/", views.dashboard, name="dashboard"),
    # JSON API used by the dashboard page
    path("api/calendar/events/", views.calendar_events, name="calendar_events"),
    path("api/calendar/list/", views.calendar_list, name="calendar_list"),
    path("api/chat/", views.chat, name="chat"),
    path("api/tasks/", views.tasks, name="tasks"),
    path("api/tasks/<uuid:task_id>/schedule/", views.schedule_task, name="schedule_task"),
    path("api/user/preferences/", views.preferences, name="preferences"),
]
