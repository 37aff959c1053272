import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Contract',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('title', models.CharField(blank=True, default='', help_text='Contract title', max_length=255)),
                ('status', models.CharField(
                    choices=[
                        ('draft', 'Draft'),
                        ('approved', 'Approved'),
                        ('sent_to_signature', 'Sent to Signature'),
                        ('partially_signed', 'Partially Signed'),
                        ('fully_signed', 'Fully Signed'),
                        ('cancelled', 'Cancelled'),
                    ],
                    default='draft',
                    help_text='Contract lifecycle status',
                    max_length=32,
                )),
                ('content', models.JSONField(
                    default=dict,
                    help_text='Ordered sections: {"sections": [{"id", "title", "body", "editable"}]}',
                )),
                ('parties', models.JSONField(
                    blank=True,
                    default=dict,
                    help_text='Signing parties snapshot: {"owner": {"name", "email"}, "tenant": {...}, "guarantor": {...}}',
                )),
                ('property_ref', models.CharField(blank=True, default='', help_text='Opaque property reference', max_length=100)),
                ('application_ref', models.CharField(blank=True, default='', help_text='Opaque application reference', max_length=100)),
                ('approved_at', models.DateTimeField(blank=True, help_text='Approval timestamp', null=True)),
                ('approved_by', models.CharField(blank=True, default='', help_text='User who approved', max_length=100)),
                ('sent_to_signature_at', models.DateTimeField(blank=True, null=True)),
                ('fully_signed_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'contracts',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['status'], name='contract_status_idx')],
            },
        ),
        migrations.CreateModel(
            name='SignatureRecord',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('signer_type', models.CharField(
                    choices=[('owner', 'Owner'), ('tenant', 'Tenant'), ('guarantor', 'Guarantor')],
                    max_length=20,
                )),
                ('signer_name', models.CharField(max_length=255)),
                ('signer_email', models.EmailField(max_length=255)),
                ('external_request_id', models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ('signature_url', models.URLField(blank=True, max_length=1000, null=True)),
                ('certificate_url', models.CharField(blank=True, max_length=1000, null=True)),
                ('status', models.CharField(
                    choices=[
                        ('pending', 'Pending'),
                        ('sent', 'Sent'),
                        ('viewed', 'Viewed'),
                        ('signed', 'Signed'),
                        ('rejected', 'Rejected'),
                        ('expired', 'Expired'),
                        ('cancelled', 'Cancelled'),
                    ],
                    default='pending',
                    max_length=20,
                )),
                ('requested_at', models.DateTimeField(blank=True, help_text='When the provider request was created', null=True)),
                ('signed_at', models.DateTimeField(blank=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True, null=True)),
                ('last_status_check_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('contract', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='signature_records',
                    to='contracts.contract',
                )),
            ],
            options={
                'db_table': 'contract_signature_records',
                'ordering': ['created_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('contract', 'signer_type'), name='uniq_signature_record_per_role'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SigningAuditLog',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('event', models.CharField(max_length=50)),
                ('message', models.TextField(blank=True, default='')),
                ('old_status', models.CharField(blank=True, default='', max_length=20)),
                ('new_status', models.CharField(blank=True, default='', max_length=20)),
                ('provider_response', models.JSONField(blank=True, default=dict)),
                ('timestamp', models.DateTimeField(auto_now_add=True)),
                ('signature_record', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='audit_logs',
                    to='contracts.signaturerecord',
                )),
            ],
            options={
                'db_table': 'contract_signing_audit_logs',
                'ordering': ['timestamp'],
                'indexes': [
                    models.Index(fields=['signature_record', 'timestamp'], name='signing_audit_record_ts_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ContractExportJob',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('status', models.CharField(
                    choices=[
                        ('pending', 'Pending'),
                        ('processing', 'Processing'),
                        ('completed', 'Completed'),
                        ('failed', 'Failed'),
                        ('cancelled', 'Cancelled'),
                    ],
                    default='pending',
                    max_length=20,
                )),
                ('scale_mode', models.CharField(
                    choices=[('fit_page', 'Fit Page'), ('fit_width', 'Fit Width')],
                    default='fit_page',
                    max_length=20,
                )),
                ('page_width_mm', models.FloatField(default=210)),
                ('page_height_mm', models.FloatField(default=297)),
                ('page_count', models.IntegerField(blank=True, null=True)),
                ('filename', models.CharField(blank=True, default='', max_length=255)),
                ('artifact', models.FileField(blank=True, null=True, upload_to='contract_exports/')),
                ('error_message', models.TextField(blank=True, help_text='Error details if failed', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('contract', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='export_jobs',
                    to='contracts.contract',
                )),
            ],
            options={
                'db_table': 'contract_export_jobs',
                'ordering': ['-created_at'],
            },
        ),
    ]
