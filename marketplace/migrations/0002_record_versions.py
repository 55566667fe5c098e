from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('marketplace', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='packagerequest',
            name='version',
            field=models.PositiveIntegerField(default=0, editable=False, help_text='Bumped by every claim, edit and status change', verbose_name='version'),
        ),
        migrations.AddField(
            model_name='tripoffer',
            name='version',
            field=models.PositiveIntegerField(default=0, editable=False, help_text='Bumped by every claim, edit and status change', verbose_name='version'),
        ),
    ]
