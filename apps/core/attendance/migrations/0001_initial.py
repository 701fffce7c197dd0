import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core_students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='StudentAttendance',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('date', models.DateField()),
                ('status', models.CharField(
                    choices=[('present', 'Present'), ('absent', 'Absent'), ('late', 'Late')],
                    default='present',
                    max_length=20,
                )),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('marked_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='marked_student_attendance',
                    to=settings.AUTH_USER_MODEL,
                )),
                ('student', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='daily_attendances',
                    to='core_students.student',
                )),
            ],
            options={
                'ordering': ['-date', 'student__name'],
                'indexes': [models.Index(fields=['date', 'status'], name='attendance_date_status_idx')],
                'constraints': [
                    models.UniqueConstraint(
                        fields=('student', 'date'),
                        name='unique_student_daily_attendance_per_date',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='AttendanceCounter',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('absent_count', models.PositiveIntegerField(default=0)),
                ('late_count', models.PositiveIntegerField(default=0)),
                ('has_absent_first_alert', models.BooleanField(default=False)),
                ('has_absent_second_alert', models.BooleanField(default=False)),
                ('has_late_first_alert', models.BooleanField(default=False)),
                ('has_late_second_alert', models.BooleanField(default=False)),
                ('last_status', models.CharField(
                    blank=True,
                    choices=[('present', 'Present'), ('absent', 'Absent'), ('late', 'Late')],
                    max_length=20,
                )),
                ('last_reset', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('student', models.OneToOneField(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='attendance_counter',
                    to='core_students.student',
                )),
            ],
            options={
                'ordering': ['student__name'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('absent_count', 0), ('late_count', 0), _connector='OR'),
                        name='attendance_counter_single_streak',
                    ),
                ],
            },
        ),
    ]
