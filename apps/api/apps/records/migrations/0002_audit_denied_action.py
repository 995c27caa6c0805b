# Adds the 'denied' audit action for refused access attempts

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('records', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='recordauditentry',
            name='action',
            field=models.CharField(
                choices=[
                    ('create', 'Create'),
                    ('view', 'View'),
                    ('update', 'Update'),
                    ('delete', 'Delete'),
                    ('restore', 'Restore'),
                    ('backup', 'Backup'),
                    ('export', 'Export'),
                    ('denied', 'Denied'),
                ],
                max_length=10
            ),
        ),
    ]
