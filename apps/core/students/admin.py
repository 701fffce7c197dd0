from django.contrib import admin

from .models import Family, Student, StudentStatusHistory


@admin.register(Family)
class FamilyAdmin(admin.ModelAdmin):
    list_display = ('name', 'email', 'phone', 'discount_percent')
    search_fields = ('name', 'email', 'phone')


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = (
        'name',
        'family',
        'monthly_fee',
        'starting_date',
        'status',
        'class_session',
    )
    list_filter = ('status', 'class_session')
    search_fields = ('name', 'family__name', 'family__email')


@admin.register(StudentStatusHistory)
class StudentStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ('student', 'old_status', 'new_status', 'changed_by', 'changed_at')
    list_filter = ('new_status',)
