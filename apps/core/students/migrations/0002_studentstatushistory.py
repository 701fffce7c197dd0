import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('core_students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='StudentStatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('old_status', models.CharField(
                    choices=[('enrolled', 'Enrolled'), ('hold', 'On Hold'), ('approved', 'Approved'), ('rejected', 'Rejected')],
                    max_length=20,
                )),
                ('new_status', models.CharField(
                    choices=[('enrolled', 'Enrolled'), ('hold', 'On Hold'), ('approved', 'Approved'), ('rejected', 'Rejected')],
                    max_length=20,
                )),
                ('reason', models.CharField(blank=True, max_length=255)),
                ('changed_at', models.DateTimeField(auto_now_add=True)),
                ('changed_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='student_status_changes',
                    to=settings.AUTH_USER_MODEL,
                )),
                ('student', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='status_history',
                    to='core_students.student',
                )),
            ],
            options={
                'ordering': ['-changed_at'],
            },
        ),
    ]
