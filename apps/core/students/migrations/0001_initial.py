import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Family',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=150)),
                ('email', models.EmailField(max_length=254, unique=True)),
                ('phone', models.CharField(blank=True, max_length=20)),
                ('discount_percent', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=5)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name_plural': 'families',
                'ordering': ['name', 'id'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('discount_percent__gte', 0), ('discount_percent__lte', 100)),
                        name='family_discount_within_range',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='Student',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=150)),
                ('email', models.EmailField(blank=True, max_length=254)),
                ('monthly_fee', models.DecimalField(decimal_places=2, default=Decimal('50.00'), max_digits=10)),
                ('starting_date', models.DateField(default=django.utils.timezone.localdate)),
                ('status', models.CharField(
                    choices=[('enrolled', 'Enrolled'), ('hold', 'On Hold'), ('approved', 'Approved'), ('rejected', 'Rejected')],
                    default='approved',
                    max_length=20,
                )),
                ('class_session', models.CharField(
                    choices=[('weekdays', 'Weekdays'), ('weekend', 'Weekend')],
                    default='weekdays',
                    max_length=20,
                )),
                ('department', models.CharField(blank=True, max_length=120)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('family', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='students',
                    to='core_students.family',
                )),
            ],
            options={
                'ordering': ['name', 'id'],
                'indexes': [models.Index(fields=['family', 'status'], name='student_family_status_idx')],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('monthly_fee__gte', 0)),
                        name='student_monthly_fee_non_negative',
                    ),
                ],
            },
        ),
    ]
