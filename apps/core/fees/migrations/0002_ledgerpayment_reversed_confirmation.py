from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('core_fees', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='ledgerpayment',
            name='confirmation',
            field=models.CharField(
                choices=[
                    ('confirmed', 'Confirmed'),
                    ('awaiting_verification', 'Awaiting office verification'),
                    ('awaiting_processor', 'Awaiting processor'),
                    ('reversed', 'Reversed'),
                ],
                default='confirmed',
                max_length=30,
            ),
        ),
    ]
