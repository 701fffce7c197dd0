import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models

STATUS_CHOICES = [
    ('pending', 'Pending'),
    ('partial', 'Partially paid'),
    ('paid', 'Paid'),
    ('failed', 'Failed'),
    ('cancelled', 'Cancelled'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core_students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='LedgerRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payment_type', models.CharField(
                    choices=[
                        ('admission', 'Admission'),
                        ('admissionOnHold', 'Admission (on hold)'),
                        ('monthly', 'Monthly'),
                        ('monthlyOnHold', 'Monthly (on hold)'),
                    ],
                    max_length=20,
                )),
                ('status', models.CharField(choices=STATUS_CHOICES, default='pending', max_length=20)),
                ('billing_year', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('billing_month', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('expected_total', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('paid_total', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('remaining', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('method', models.CharField(blank=True, max_length=30)),
                ('version', models.PositiveIntegerField(default=0)),
                ('status_reason', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('family', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='ledger_records',
                    to='core_students.family',
                )),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['family', 'status'], name='ledger_family_status_idx'),
                    models.Index(fields=['family', 'billing_year', 'billing_month'], name='ledger_record_period_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(
                            ('payment_type__in', ('monthly', 'monthlyOnHold')),
                            ('status__in', ('pending', 'partial')),
                        ),
                        fields=('family', 'billing_year', 'billing_month'),
                        name='unique_open_monthly_record_per_family_month',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(('expected_total__gte', 0), ('paid_total__gte', 0), ('remaining__gte', 0)),
                        name='ledger_record_non_negative_amounts',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ('payment_type__in', ('monthly', 'monthlyOnHold')),
                                ('billing_year__isnull', False),
                                ('billing_month__gte', 1),
                                ('billing_month__lte', 12),
                            ),
                            models.Q(
                                ('payment_type__in', ('admission', 'admissionOnHold')),
                                ('billing_year__isnull', True),
                                ('billing_month__isnull', True),
                            ),
                            _connector='OR',
                        ),
                        name='ledger_record_billing_period_matches_type',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='AdmissionLedger',
            fields=[],
            options={
                'proxy': True,
                'indexes': [],
                'constraints': [],
            },
            bases=('core_fees.ledgerrecord',),
        ),
        migrations.CreateModel(
            name='MonthlyLedger',
            fields=[],
            options={
                'proxy': True,
                'indexes': [],
                'constraints': [],
            },
            bases=('core_fees.ledgerrecord',),
        ),
        migrations.CreateModel(
            name='LedgerStudent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=150)),
                ('admission_fee', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('admission_paid', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10)),
                ('subtotal', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('record', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='student_lines',
                    to='core_fees.ledgerrecord',
                )),
                ('student', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='ledger_lines',
                    to='core_students.student',
                )),
            ],
            options={
                'ordering': ['id'],
                'constraints': [
                    models.UniqueConstraint(fields=('record', 'student'), name='unique_student_per_ledger_record'),
                    models.CheckConstraint(
                        condition=models.Q(('admission_paid__gte', 0), ('subtotal__gte', 0)),
                        name='ledger_student_non_negative_amounts',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='MonthCharge',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('year', models.PositiveSmallIntegerField()),
                ('month', models.PositiveSmallIntegerField()),
                ('monthly_fee', models.DecimalField(decimal_places=2, max_digits=10)),
                ('discounted_fee', models.DecimalField(decimal_places=2, max_digits=10)),
                ('paid', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10)),
                ('settled_by_admission', models.BooleanField(default=False)),
                ('is_void', models.BooleanField(default=False)),
                ('line', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='months',
                    to='core_fees.ledgerstudent',
                )),
                ('student', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='month_charges',
                    to='core_students.student',
                )),
            ],
            options={
                'ordering': ['year', 'month', 'id'],
                'indexes': [models.Index(fields=['student', 'year', 'month'], name='month_charge_period_idx')],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(('is_void', False)),
                        fields=('student', 'year', 'month'),
                        name='unique_active_charge_per_student_month',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(('month__gte', 1), ('month__lte', 12)),
                        name='month_charge_valid_month',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(('monthly_fee__gte', 0), ('discounted_fee__gte', 0), ('paid__gte', 0)),
                        name='month_charge_non_negative_amounts',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='LedgerPayment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('method', models.CharField(
                    choices=[
                        ('card', 'Card'),
                        ('bank_transfer', 'Bank transfer'),
                        ('cash', 'Cash'),
                        ('direct_debit', 'Direct debit'),
                        ('other', 'Other'),
                    ],
                    max_length=30,
                )),
                ('paid_on', models.DateField(default=django.utils.timezone.localdate)),
                ('confirmation', models.CharField(
                    choices=[
                        ('confirmed', 'Confirmed'),
                        ('awaiting_verification', 'Awaiting office verification'),
                        ('awaiting_processor', 'Awaiting processor'),
                    ],
                    default='confirmed',
                    max_length=30,
                )),
                ('processor_payment_intent_id', models.CharField(blank=True, db_index=True, max_length=120)),
                ('reference', models.CharField(blank=True, max_length=120)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('record', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='payments',
                    to='core_fees.ledgerrecord',
                )),
                ('recorded_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='recorded_ledger_payments',
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                'ordering': ['created_at', 'id'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='ledger_payment_amount_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PaymentAllocation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('component', models.CharField(
                    choices=[('admission', 'Admission fee'), ('month', 'Monthly fee')],
                    max_length=20,
                )),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('line', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='allocations',
                    to='core_fees.ledgerstudent',
                )),
                ('month_charge', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='allocations',
                    to='core_fees.monthcharge',
                )),
                ('payment', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='allocations',
                    to='core_fees.ledgerpayment',
                )),
            ],
            options={
                'ordering': ['id'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('amount__gt', 0)),
                        name='payment_allocation_amount_positive',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(('component', 'month'), ('month_charge__isnull', False)),
                            models.Q(('component', 'admission'), ('month_charge__isnull', True)),
                            _connector='OR',
                        ),
                        name='payment_allocation_target_matches_component',
                    ),
                ],
            },
        ),
    ]
