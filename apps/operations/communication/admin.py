from django.contrib import admin

from .models import NotificationLog


@admin.register(NotificationLog)
class NotificationLogAdmin(admin.ModelAdmin):
    list_display = ('kind', 'recipient', 'family', 'status', 'created_at')
    list_filter = ('kind', 'status')
    search_fields = ('recipient', 'subject', 'family__name')
    readonly_fields = ('kind', 'recipient', 'family', 'subject', 'status', 'error', 'payload', 'created_at')
