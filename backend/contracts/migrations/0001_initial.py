# Generated migration for the custody record contract

from django.db import migrations, models
import django.utils.timezone
import uuid

import contracts.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='CustodyRecord',
            fields=[
                ('id', models.UUIDField(
                    default=uuid.uuid4,
                    editable=False,
                    primary_key=True,
                    serialize=False
                )),
                ('owner_id', models.CharField(
                    help_text='Opaque identity of the uploader, supplied by the auth layer',
                    max_length=255
                )),
                ('original_name', models.CharField(
                    help_text='Original filename (basename only) as uploaded',
                    max_length=255
                )),
                ('content_type', models.CharField(
                    help_text='MIME type of the file',
                    max_length=255
                )),
                ('size_bytes', models.BigIntegerField(
                    help_text='Bytes actually written to storage'
                )),
                ('storage_location', models.CharField(
                    help_text='Opaque location resolvable by the storage backend',
                    max_length=512,
                    unique=True
                )),
                ('uploaded_at', models.DateTimeField(
                    default=django.utils.timezone.now,
                    help_text='When this file was uploaded'
                )),
                ('expires_at', models.DateTimeField(
                    blank=True,
                    help_text='Retention deadline for the download link',
                    null=True
                )),
                ('token_hash', models.CharField(
                    help_text='Base64 SHA-256 of salt || token',
                    max_length=128,
                    unique=True
                )),
                ('token_salt', models.CharField(
                    help_text='Base64 random salt for the token hash',
                    max_length=64
                )),
                ('token_issued_at', models.DateTimeField(
                    default=django.utils.timezone.now
                )),
                ('token_consumed_at', models.DateTimeField(
                    blank=True,
                    null=True
                )),
                ('deleted_at', models.DateTimeField(
                    blank=True,
                    help_text='Tombstone: consumed, expired or swept',
                    null=True
                )),
                ('version', models.CharField(
                    default=contracts.models.new_version,
                    help_text='Concurrency stamp, rewritten on every mutation',
                    max_length=32
                )),
            ],
            options={
                'verbose_name': 'Custody Record',
                'verbose_name_plural': 'Custody Records',
                'ordering': ['-uploaded_at'],
            },
        ),
        migrations.AddIndex(
            model_name='custodyrecord',
            index=models.Index(fields=['owner_id', 'uploaded_at'], name='custody_owner_date_idx'),
        ),
        migrations.AddIndex(
            model_name='custodyrecord',
            index=models.Index(fields=['expires_at'], name='custody_expires_idx'),
        ),
        migrations.AddIndex(
            model_name='custodyrecord',
            index=models.Index(fields=['deleted_at'], name='custody_deleted_idx'),
        ),
    ]
