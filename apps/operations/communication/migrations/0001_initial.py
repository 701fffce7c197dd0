import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core_students', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='NotificationLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(
                    choices=[
                        ('admission_confirmation', 'Admission payment confirmation'),
                        ('monthly_confirmation', 'Monthly payment confirmation'),
                        ('payment_on_hold', 'Payment on hold'),
                        ('payment_succeeded', 'Direct debit payment succeeded'),
                        ('mandate_pending', 'Direct debit pending verification'),
                        ('mandate_active', 'Direct debit active'),
                        ('mandate_failed', 'Direct debit failed'),
                        ('fee_reminder', 'Fee reminder'),
                        ('attendance_alert', 'Attendance alert'),
                    ],
                    max_length=40,
                )),
                ('recipient', models.EmailField(blank=True, max_length=254)),
                ('subject', models.CharField(blank=True, max_length=200)),
                ('status', models.CharField(
                    choices=[('sent', 'Sent'), ('skipped', 'Skipped'), ('failed', 'Failed')],
                    max_length=20,
                )),
                ('error', models.TextField(blank=True)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('family', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='notifications',
                    to='core_students.family',
                )),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['kind', 'status'], name='notification_kind_status_idx'),
                    models.Index(fields=['family', '-created_at'], name='notification_family_idx'),
                ],
            },
        ),
    ]
