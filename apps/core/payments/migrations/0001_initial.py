import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core_students', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='DirectDebitMandate',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('processor_customer_id', models.CharField(blank=True, db_index=True, max_length=120)),
                ('processor_mandate_id', models.CharField(blank=True, db_index=True, max_length=120)),
                ('processor_payment_method_id', models.CharField(blank=True, max_length=120)),
                ('status', models.CharField(
                    choices=[('pending', 'Pending'), ('active', 'Active'), ('cancelled', 'Cancelled')],
                    default='pending',
                    max_length=20,
                )),
                ('mandate_status', models.CharField(blank=True, max_length=40)),
                ('preferred_payment_date', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('setup_date', models.DateTimeField(blank=True, null=True)),
                ('active_date', models.DateTimeField(blank=True, null=True)),
                ('success_email_sent_at', models.DateTimeField(blank=True, null=True)),
                ('failure_reason', models.CharField(blank=True, max_length=255)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('family', models.OneToOneField(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='mandate',
                    to='core_students.family',
                )),
            ],
            options={
                'ordering': ['family__name', 'id'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(
                            ('preferred_payment_date__isnull', True),
                            models.Q(('preferred_payment_date__gte', 1), ('preferred_payment_date__lte', 28)),
                            _connector='OR',
                        ),
                        name='mandate_preferred_day_in_range',
                    ),
                ],
            },
        ),
    ]
