from django.contrib import admin

from .models import AttendanceCounter, StudentAttendance


@admin.register(StudentAttendance)
class StudentAttendanceAdmin(admin.ModelAdmin):
    list_display = ('date', 'student', 'status', 'marked_by')
    list_filter = ('status', 'date', 'student__class_session')
    search_fields = ('student__name', 'student__family__name')


@admin.register(AttendanceCounter)
class AttendanceCounterAdmin(admin.ModelAdmin):
    list_display = (
        'student',
        'absent_count',
        'late_count',
        'has_absent_first_alert',
        'has_absent_second_alert',
        'has_late_first_alert',
        'has_late_second_alert',
        'last_status',
    )
    list_filter = ('last_status',)
    search_fields = ('student__name',)
    readonly_fields = ('last_reset', 'updated_at')
