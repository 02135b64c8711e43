from django.contrib import admin
from .models import Task, UserPreference
# Register your models here.

@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'user', 'priority', 'date', 'scheduled', 'created_at')
    search_fields = ('title', 'user__username')
    list_filter = ('priority', 'scheduled')

@admin.register(UserPreference)
class UserPreferenceAdmin(admin.ModelAdmin):
    list_display = ('user', 'timezone', 'theme', 'updated_at')
    search_fields = ('user__username', 'user__email')
