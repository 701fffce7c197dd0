import apps.core.students.models
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('core_students', '0002_studentstatushistory'),
    ]

    operations = [
        migrations.RemoveField(
            model_name='student',
            name='department',
        ),
        migrations.AlterField(
            model_name='student',
            name='monthly_fee',
            field=models.DecimalField(
                decimal_places=2,
                default=apps.core.students.models.default_monthly_fee,
                max_digits=10,
            ),
        ),
    ]
