from django.conf import settings
from django.db import models
from django.contrib.auth import get_user_model
import uuid

User = get_user_model()


def default_calendar_ids():
    return ["primary"]


def default_timezone():
    return getattr(settings, "DEFAULT_USER_TIMEZONE", "America/New_York")


class UserPreference(models.Model):
    THEME_CHOICES = [("light", "Light"), ("dark", "Dark"), ("system", "System")]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="preference")
    timezone = models.CharField(max_length=64, default=default_timezone, help_text="IANA name, e.g. Europe/London")
    # Calendars whose events are aggregated in the dashboard view
    selected_calendar_ids = models.JSONField(default=default_calendar_ids)
    theme = models.CharField(max_length=10, choices=THEME_CHOICES, default="system")

    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def defaults_as_dict(cls) -> dict:
        return {
            "selectedCalendarIds": default_calendar_ids(),
            "theme": "system",
            "timezone": default_timezone(),
        }

    def as_dict(self) -> dict:
        return {
            "selectedCalendarIds": self.selected_calendar_ids or default_calendar_ids(),
            "theme": self.theme or "system",
            "timezone": self.timezone or default_timezone(),
        }

    def __str__(self):
        return f"Prefs for {self.user.username}"


class Task(models.Model):
    PRIORITY_CHOICES = [("High", "High"), ("Medium", "Medium"), ("Low", "Low")]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="tasks")
    title = models.CharField(max_length=255)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default="Medium")
    date = models.DateField(blank=True, null=True)
    estimated_duration = models.PositiveIntegerField(blank=True, null=True, help_text="Minutes")
    # Set once the task has been dropped onto the calendar
    scheduled = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="task_user_created_idx"),
        ]

    def as_dict(self) -> dict:
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "title": self.title,
            "priority": self.priority,
            "date": self.date.isoformat() if self.date else None,
            "estimatedDuration": self.estimated_duration,
            "scheduled": self.scheduled,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self):
        return f"{self.title} ({self.priority}) for {self.user.username}"
