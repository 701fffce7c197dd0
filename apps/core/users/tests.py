from unittest import mock

from django.contrib.auth import get_user_model
from django.test import RequestFactory, TestCase
from django.http import JsonResponse

from apps.core.students.models import Family

from .audit import log_audit_event
from .decorators import role_required
from .models import AuditLog


@role_required(['admin', 'accountant'])
def staff_only_view(request):
    return JsonResponse({'ok': True})


class UserRoleTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.family = Family.objects.create(name='Ali', email='ali@example.com')

    def test_parent_must_be_linked_to_family(self):
        with self.assertRaises(ValueError):
            self.user_model.objects.create_user(username='orphan', password='pass12345', role='parent')

    def test_staff_users_are_not_linked_to_family(self):
        accountant = self.user_model.objects.create_user(
            username='acc',
            password='pass12345',
            role='accountant',
            family=self.family,
        )
        self.assertIsNone(accountant.family)
        self.assertTrue(accountant.is_staff_member)

    def test_superuser_is_admin(self):
        admin = self.user_model.objects.create_superuser('root', 'root@example.com', 'pass12345')
        self.assertEqual(admin.role, 'admin')


class RoleRequiredTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.user_model = get_user_model()
        self.family = Family.objects.create(name='Ali', email='ali@example.com')

    def test_parent_is_forbidden(self):
        request = self.factory.get('/staff-only/')
        request.user = self.user_model.objects.create_user(
            username='parent1',
            password='pass12345',
            role='parent',
            family=self.family,
        )
        response = staff_only_view(request)
        self.assertEqual(response.status_code, 403)

    def test_accountant_is_allowed(self):
        request = self.factory.get('/staff-only/')
        request.user = self.user_model.objects.create_user(username='acc1', password='pass12345', role='accountant')
        self.assertEqual(staff_only_view(request).status_code, 200)


class AuditLogTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(username='auditor', password='pass12345', role='admin')

    def test_login_is_audited(self):
        self.client.login(username='auditor', password='pass12345')
        self.assertTrue(
            AuditLog.objects.filter(action='user.login', target_model='User', target_id=str(self.user.pk)).exists()
        )

    def test_audit_failure_does_not_raise(self):
        request = RequestFactory().post('/fees/payments/', REMOTE_ADDR='10.0.0.5')
        request.user = self.user
        with mock.patch('apps.core.users.audit.AuditLog.objects.create', side_effect=RuntimeError('db down')):
            with self.assertLogs('apps.core.users.audit', level='ERROR'):
                log_audit_event(request, 'fees.payment_recorded')
        self.assertFalse(AuditLog.objects.exists())
