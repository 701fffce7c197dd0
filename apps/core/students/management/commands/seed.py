import random
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import transaction
from faker import Faker

from apps.core.students.models import Family, Student
from apps.core.users.models import User


class Command(BaseCommand):
    help = 'Seeds the database with families, students and users.'

    def add_arguments(self, parser):
        parser.add_argument('--families', type=int, default=10)
        parser.add_argument('--seed', type=int, default=None)

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding database...')

        fake = Faker('en_GB')
        if options['seed'] is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        if not User.objects.filter(username='admin').exists():
            User.objects.create_superuser('admin', 'admin@example.com', 'password')
            self.stdout.write(self.style.SUCCESS('Successfully created admin user.'))

        accountant, created = User.objects.get_or_create(
            username='accountant',
            defaults={'role': User.ROLE_ACCOUNTANT},
        )
        if created:
            accountant.set_password('password')
            accountant.save()
            self.stdout.write(self.style.SUCCESS('Successfully created accountant user.'))

        cutover = settings.FEES_BILLING_CUTOVER_DATE
        for _ in range(options['families']):
            surname = fake.last_name()
            family, created = Family.objects.get_or_create(
                email=fake.unique.email(),
                defaults={
                    'name': f"{surname} family",
                    'phone': fake.phone_number()[:20],
                    'discount_percent': random.choice([Decimal('0'), Decimal('0'), Decimal('10'), Decimal('15')]),
                },
            )
            if not created:
                continue

            for _ in range(random.randint(1, 3)):
                Student.objects.create(
                    family=family,
                    name=f"{fake.first_name()} {surname}",
                    monthly_fee=settings.FEES_DEFAULT_MONTHLY_FEE,
                    starting_date=cutover + timedelta(days=random.randint(-200, 120)),
                    status=random.choice([Student.STATUS_ENROLLED] * 4 + [Student.STATUS_HOLD]),
                    class_session=random.choice([Student.SESSION_WEEKDAYS, Student.SESSION_WEEKEND]),
                )

            parent = User(username=f"parent_{family.pk}", email=family.email, role=User.ROLE_PARENT, family=family)
            parent.set_password('password')
            parent.save()
            self.stdout.write(self.style.SUCCESS(f'Successfully created family: {family.name}'))

        self.stdout.write(self.style.SUCCESS('Database seeded successfully!'))
