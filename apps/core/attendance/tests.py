import json
from datetime import date, timedelta

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.exceptions import ValidationError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from apps.core.students.models import Family, Student
from apps.operations.communication.models import NotificationLog

from .models import AttendanceCounter, StudentAttendance
from .services import mark_attendance

START = date(2025, 9, 1)


class AttendanceBaseTestCase(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Hussain', email='hussain@example.com')
        self.student = Student.objects.create(
            family=self.family,
            name='Zara',
            starting_date=START,
            status=Student.STATUS_ENROLLED,
            class_session=Student.SESSION_WEEKDAYS,
        )

    def mark_days(self, statuses, student=None, start=START):
        stages = []
        for offset, status in enumerate(statuses):
            with self.captureOnCommitCallbacks(execute=True):
                _, stage = mark_attendance(
                    student=student or self.student,
                    date=start + timedelta(days=offset),
                    status=status,
                )
            stages.append(stage)
        return stages

    def counter(self, student=None):
        return AttendanceCounter.objects.get(student=student or self.student)


class AttendanceCounterTests(AttendanceBaseTestCase):
    def test_first_alert_after_three_weekday_absences(self):
        stages = self.mark_days(['absent', 'absent', 'absent'])

        self.assertEqual(stages, [None, None, 'first'])
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('Zara', mail.outbox[0].body)
        self.assertTrue(self.counter().has_absent_first_alert)

    def test_second_alert_once_per_streak(self):
        stages = self.mark_days(['absent'] * 7)

        self.assertEqual(stages, [None, None, 'first', None, 'second', None, None])
        self.assertEqual(
            NotificationLog.objects.filter(kind=NotificationLog.KIND_ATTENDANCE_ALERT).count(),
            2,
        )

    def test_weekend_students_use_lower_thresholds(self):
        weekend = Student.objects.create(
            family=self.family,
            name='Omar',
            starting_date=START,
            status=Student.STATUS_ENROLLED,
            class_session=Student.SESSION_WEEKEND,
        )
        stages = self.mark_days(['late'] * 4, student=weekend)
        self.assertEqual(stages, [None, 'first', None, 'second'])

    def test_present_resets_counts_and_flags(self):
        self.mark_days(['absent', 'absent', 'absent', 'present'])

        counter = self.counter()
        self.assertEqual((counter.absent_count, counter.late_count), (0, 0))
        self.assertFalse(counter.has_absent_first_alert)
        self.assertIsNotNone(counter.last_reset)

        stages = self.mark_days(['absent'] * 3, start=START + timedelta(days=10))
        self.assertEqual(stages[-1], 'first')

    def test_switching_between_absent_and_late_restarts_streak(self):
        stages = self.mark_days(['absent', 'absent', 'late', 'absent', 'absent'])

        self.assertEqual(stages, [None] * 5)
        counter = self.counter()
        self.assertEqual(counter.absent_count, 2)
        self.assertEqual(counter.late_count, 0)
        self.assertEqual(counter.last_status, StudentAttendance.STATUS_ABSENT)

    def test_remarking_same_day_does_not_recount(self):
        self.mark_days(['absent', 'absent'])
        with self.captureOnCommitCallbacks(execute=True):
            _, stage = mark_attendance(student=self.student, date=START + timedelta(days=1), status='absent')

        self.assertIsNone(stage)
        self.assertEqual(self.counter().absent_count, 2)
        self.assertEqual(StudentAttendance.objects.filter(student=self.student).count(), 2)

    def test_correcting_a_day_updates_the_mark(self):
        self.mark_days(['absent'])
        attendance, _ = mark_attendance(student=self.student, date=START, status='present')

        self.assertEqual(attendance.status, StudentAttendance.STATUS_PRESENT)
        self.assertEqual(StudentAttendance.objects.filter(student=self.student).count(), 1)
        self.assertEqual(self.counter().absent_count, 0)

    def test_invalid_status_and_future_date_are_rejected(self):
        with self.assertRaises(ValidationError):
            mark_attendance(student=self.student, date=START, status='leave')
        with self.assertRaises(ValidationError):
            mark_attendance(
                student=self.student,
                date=timezone.localdate() + timedelta(days=1),
                status='present',
            )


class AttendanceViewTests(AttendanceBaseTestCase):
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        user_model.objects.create_user(username='att_admin', password='pass12345', role='admin')
        user_model.objects.create_user(
            username='att_parent',
            password='pass12345',
            role='parent',
            family=self.family,
        )
        self.sibling = Student.objects.create(
            family=self.family,
            name='Yusuf',
            starting_date=START,
            status=Student.STATUS_ENROLLED,
        )

    def post_json(self, body):
        return self.client.post(reverse('attendance_mark'), data=json.dumps(body), content_type='application/json')

    def test_admin_marks_several_students(self):
        self.client.login(username='att_admin', password='pass12345')
        response = self.post_json({
            'date': '2025-09-02',
            'marks': [
                {'student': self.student.pk, 'status': 'absent'},
                {'student': self.sibling.pk, 'status': 'present'},
            ],
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual([mark['status'] for mark in response.json()['marks']], ['absent', 'present'])
        self.assertEqual(StudentAttendance.objects.filter(date=date(2025, 9, 2)).count(), 2)

    def test_unknown_student_is_not_found(self):
        self.client.login(username='att_admin', password='pass12345')
        response = self.post_json({'date': '2025-09-02', 'student': 99999, 'status': 'absent'})
        self.assertEqual(response.status_code, 404)

    def test_parent_cannot_mark(self):
        self.client.login(username='att_parent', password='pass12345')
        response = self.post_json({'date': '2025-09-02', 'student': self.student.pk, 'status': 'present'})
        self.assertEqual(response.status_code, 403)
