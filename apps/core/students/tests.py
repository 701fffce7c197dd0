from datetime import date
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import IntegrityError
from django.test import TestCase, override_settings

from .models import Family, Student, StudentStatusHistory
from .services import billable_students, change_student_status


class FamilyModelTests(TestCase):
    def test_discount_must_be_a_percentage(self):
        family = Family(name='Khan', email='khan@example.com', discount_percent=Decimal('120'))
        with self.assertRaises(ValidationError):
            family.full_clean()

    def test_discount_constraint_enforced_by_database(self):
        with self.assertRaises(IntegrityError):
            Family.objects.create(name='Khan', email='khan@example.com', discount_percent=Decimal('-5'))


class StudentStatusTests(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Begum', email='begum@example.com')
        self.student = Student.objects.create(
            family=self.family,
            name='Maryam',
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_APPROVED,
        )
        self.admin = get_user_model().objects.create_user(username='status_admin', password='pass12345', role='admin')

    def test_status_change_is_recorded(self):
        history = change_student_status(self.student, Student.STATUS_ENROLLED, changed_by=self.admin, reason='Joined')

        self.student.refresh_from_db()
        self.assertEqual(self.student.status, Student.STATUS_ENROLLED)
        self.assertEqual((history.old_status, history.new_status), ('approved', 'enrolled'))
        self.assertEqual(history.changed_by, self.admin)

    def test_same_status_is_a_no_op(self):
        self.assertIsNone(change_student_status(self.student, Student.STATUS_APPROVED))
        self.assertFalse(StudentStatusHistory.objects.exists())

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(ValidationError):
            change_student_status(self.student, 'graduated')

    def test_only_enrolled_students_are_billable(self):
        enrolled = Student.objects.create(
            family=self.family,
            name='Adam',
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )
        Student.objects.create(family=self.family, name='Sara', status=Student.STATUS_HOLD)

        self.assertEqual(list(billable_students(self.family)), [enrolled])
        self.assertFalse(self.student.is_billable)

    @override_settings(FEES_DEFAULT_MONTHLY_FEE=Decimal('65.00'))
    def test_monthly_fee_defaults_to_configured_fee(self):
        student = Student.objects.create(family=self.family, name='Idris', starting_date=date(2025, 9, 1))
        student.refresh_from_db()
        self.assertEqual(student.monthly_fee, Decimal('65.00'))

    def test_blank_name_is_rejected(self):
        student = Student(family=self.family, name='   ')
        with self.assertRaises(ValidationError):
            student.full_clean()


class SeedCommandTests(TestCase):
    def test_seed_creates_families_with_parents(self):
        out = StringIO()
        call_command('seed', '--families', '3', '--seed', '7', stdout=out)

        user_model = get_user_model()
        self.assertEqual(Family.objects.count(), 3)
        self.assertTrue(user_model.objects.filter(username='admin', role='admin').exists())
        self.assertTrue(user_model.objects.filter(username='accountant', role='accountant').exists())
        self.assertEqual(user_model.objects.filter(role='parent').count(), 3)
        self.assertIn('Database seeded successfully!', out.getvalue())
