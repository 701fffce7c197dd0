from django.conf import settings
from django.db import models
from django.db.models import Q

from apps.core.students.models import Student


class StudentAttendance(models.Model):
    STATUS_PRESENT = 'present'
    STATUS_ABSENT = 'absent'
    STATUS_LATE = 'late'
    STATUS_CHOICES = (
        (STATUS_PRESENT, 'Present'),
        (STATUS_ABSENT, 'Absent'),
        (STATUS_LATE, 'Late'),
    )

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='daily_attendances',
    )
    date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PRESENT)
    marked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='marked_student_attendance',
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-date', 'student__name']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'date'],
                name='unique_student_daily_attendance_per_date',
            ),
        ]
        indexes = [
            models.Index(fields=['date', 'status'], name='attendance_date_status_idx'),
        ]

    def __str__(self):
        return f"{self.student.name} - {self.date} ({self.status})"


class AttendanceCounter(models.Model):
    """Running streak of absent or late marks for one student."""

    student = models.OneToOneField(
        Student,
        on_delete=models.CASCADE,
        related_name='attendance_counter',
    )
    absent_count = models.PositiveIntegerField(default=0)
    late_count = models.PositiveIntegerField(default=0)
    has_absent_first_alert = models.BooleanField(default=False)
    has_absent_second_alert = models.BooleanField(default=False)
    has_late_first_alert = models.BooleanField(default=False)
    has_late_second_alert = models.BooleanField(default=False)
    last_status = models.CharField(max_length=20, choices=StudentAttendance.STATUS_CHOICES, blank=True)
    last_reset = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['student__name']
        constraints = [
            models.CheckConstraint(
                condition=Q(absent_count=0) | Q(late_count=0),
                name='attendance_counter_single_streak',
            ),
        ]

    def __str__(self):
        return f"{self.student.name}: absent {self.absent_count}, late {self.late_count}"
