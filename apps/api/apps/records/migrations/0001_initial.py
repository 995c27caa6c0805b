# Initial schema for the records app

import uuid
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='MedicalRecord',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('patient_id', models.UUIDField(help_text='Owning patient (user id)')),
                ('created_by_doctor_id', models.UUIDField(help_text='Doctor who created the record')),
                ('last_modified_by_doctor_id', models.UUIDField(blank=True, help_text='Doctor who authored the current version', null=True)),
                ('title', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('tags', models.JSONField(blank=True, default=list)),
                ('current_version_number', models.PositiveIntegerField(default=0)),
                ('is_deleted', models.BooleanField(default=False)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('deleted_by_id', models.UUIDField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Medical Record',
                'verbose_name_plural': 'Medical Records',
                'db_table': 'medical_record',
            },
        ),
        migrations.CreateModel(
            name='RecordVersion',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('version_number', models.PositiveIntegerField()),
                ('content', models.TextField()),
                ('content_hash', models.CharField(max_length=64)),
                ('content_size', models.PositiveIntegerField(help_text='Content size in bytes (UTF-8)')),
                ('change_description', models.CharField(blank=True, default='', max_length=500)),
                ('created_by_doctor_id', models.UUIDField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('record', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='versions', to='records.medicalrecord')),
            ],
            options={
                'verbose_name': 'Record Version',
                'verbose_name_plural': 'Record Versions',
                'db_table': 'record_version',
                'ordering': ['record', '-version_number'],
            },
        ),
        migrations.AddField(
            model_name='medicalrecord',
            name='current_version',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='+', to='records.recordversion'),
        ),
        migrations.CreateModel(
            name='RecordAuditEntry',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('record_id', models.UUIDField(blank=True, null=True)),
                ('patient_id', models.UUIDField()),
                ('actor_id', models.UUIDField()),
                ('actor_role', models.CharField(choices=[('doctor', 'Doctor'), ('patient', 'Patient'), ('admin', 'Admin')], max_length=10)),
                ('action', models.CharField(choices=[('create', 'Create'), ('view', 'View'), ('update', 'Update'), ('delete', 'Delete'), ('restore', 'Restore'), ('backup', 'Backup'), ('export', 'Export')], max_length=10)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Record Audit Entry',
                'verbose_name_plural': 'Record Audit Entries',
                'db_table': 'record_audit_entry',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='RecordBackup',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('patient_id', models.UUIDField()),
                ('version_number', models.PositiveIntegerField()),
                ('snapshot', models.JSONField(help_text='Record metadata and captured version content')),
                ('storage_size', models.PositiveIntegerField(help_text='Serialized snapshot size in bytes')),
                ('content_hash', models.CharField(max_length=64)),
                ('created_by_id', models.UUIDField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('record', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='backups', to='records.medicalrecord')),
                ('version', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='backups', to='records.recordversion')),
            ],
            options={
                'verbose_name': 'Record Backup',
                'verbose_name_plural': 'Record Backups',
                'db_table': 'record_backup',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddIndex(
            model_name='medicalrecord',
            index=models.Index(fields=['patient_id', 'is_deleted'], name='idx_record_patient_deleted'),
        ),
        migrations.AddIndex(
            model_name='medicalrecord',
            index=models.Index(fields=['created_by_doctor_id'], name='idx_record_created_by'),
        ),
        migrations.AddIndex(
            model_name='medicalrecord',
            index=models.Index(fields=['-updated_at'], name='idx_record_updated'),
        ),
        migrations.AddIndex(
            model_name='recordversion',
            index=models.Index(fields=['created_by_doctor_id'], name='idx_version_author'),
        ),
        migrations.AddConstraint(
            model_name='recordversion',
            constraint=models.UniqueConstraint(fields=('record', 'version_number'), name='uniq_record_version_number'),
        ),
        migrations.AddIndex(
            model_name='recordauditentry',
            index=models.Index(fields=['record_id', '-created_at'], name='idx_audit_record'),
        ),
        migrations.AddIndex(
            model_name='recordauditentry',
            index=models.Index(fields=['patient_id', '-created_at'], name='idx_audit_patient'),
        ),
        migrations.AddIndex(
            model_name='recordauditentry',
            index=models.Index(fields=['actor_id', '-created_at'], name='idx_audit_actor'),
        ),
        migrations.AddIndex(
            model_name='recordauditentry',
            index=models.Index(fields=['action'], name='idx_audit_action'),
        ),
        migrations.AddIndex(
            model_name='recordbackup',
            index=models.Index(fields=['patient_id', '-created_at'], name='idx_backup_patient'),
        ),
        migrations.AddConstraint(
            model_name='recordbackup',
            constraint=models.UniqueConstraint(fields=('record', 'version_number'), name='uniq_backup_record_version'),
        ),
    ]
