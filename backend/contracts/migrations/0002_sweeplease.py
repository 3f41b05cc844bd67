# Generated migration for the sweep lease

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('contracts', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='SweepLease',
            fields=[
                ('name', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('holder', models.CharField(
                    blank=True,
                    default='',
                    help_text='Random id of the current holder, empty when free',
                    max_length=64
                )),
                ('expires_at', models.DateTimeField(
                    blank=True,
                    help_text='Lease is free after this instant unless renewed',
                    null=True
                )),
            ],
            options={
                'verbose_name': 'Sweep Lease',
                'verbose_name_plural': 'Sweep Leases',
            },
        ),
    ]
