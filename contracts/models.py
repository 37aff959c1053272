"""
Contract, signature tracking and export models
"""
from django.db import models
from django.utils import timezone
import uuid

from .errors import TransitionError


class ContractStatus(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    APPROVED = 'approved', 'Approved'
    SENT_TO_SIGNATURE = 'sent_to_signature', 'Sent to Signature'
    PARTIALLY_SIGNED = 'partially_signed', 'Partially Signed'
    FULLY_SIGNED = 'fully_signed', 'Fully Signed'
    CANCELLED = 'cancelled', 'Cancelled'


class SignerType(models.TextChoices):
    OWNER = 'owner', 'Owner'
    TENANT = 'tenant', 'Tenant'
    GUARANTOR = 'guarantor', 'Guarantor'


class SignatureStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    SENT = 'sent', 'Sent'
    VIEWED = 'viewed', 'Viewed'
    SIGNED = 'signed', 'Signed'
    REJECTED = 'rejected', 'Rejected'
    EXPIRED = 'expired', 'Expired'
    CANCELLED = 'cancelled', 'Cancelled'


class Contract(models.Model):
    """
    Lease contract progressing through approval and multi-party signature.

    `status` is written only by `contracts.state_machine.ContractStateMachine`.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=255, blank=True, default='', help_text='Contract title')
    status = models.CharField(
        max_length=32,
        choices=ContractStatus.choices,
        default=ContractStatus.DRAFT,
        help_text='Contract lifecycle status'
    )
    content = models.JSONField(
        default=dict,
        help_text='Ordered sections: {"sections": [{"id", "title", "body", "editable"}]}'
    )
    parties = models.JSONField(
        default=dict,
        blank=True,
        help_text='Signing parties snapshot: {"owner": {"name", "email"}, "tenant": {...}, "guarantor": {...}}'
    )
    property_ref = models.CharField(max_length=100, blank=True, default='', help_text='Opaque property reference')
    application_ref = models.CharField(max_length=100, blank=True, default='', help_text='Opaque application reference')
    approved_at = models.DateTimeField(null=True, blank=True, help_text='Approval timestamp')
    approved_by = models.CharField(max_length=100, blank=True, default='', help_text='User who approved')
    sent_to_signature_at = models.DateTimeField(null=True, blank=True)
    fully_signed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'contracts'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='contract_status_idx'),
        ]

    def __str__(self):
        return f"{self.title or self.id} ({self.status})"

    @property
    def sections(self):
        return (self.content or {}).get('sections') or []


class SignatureRecord(models.Model):
    """
    Per-signer tracking row for a contract sent to signature.

    Once `signed`, only audit metadata (`last_error`, `last_status_check_at`)
    may change.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    contract = models.ForeignKey(
        Contract,
        on_delete=models.CASCADE,
        related_name='signature_records',
    )
    signer_type = models.CharField(max_length=20, choices=SignerType.choices)
    signer_name = models.CharField(max_length=255)
    signer_email = models.EmailField(max_length=255)
    external_request_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    signature_url = models.URLField(max_length=1000, null=True, blank=True)
    certificate_url = models.CharField(max_length=1000, null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=SignatureStatus.choices,
        default=SignatureStatus.PENDING,
    )
    requested_at = models.DateTimeField(null=True, blank=True, help_text='When the provider request was created')
    signed_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(null=True, blank=True)
    last_status_check_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'contract_signature_records'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(fields=['contract', 'signer_type'], name='uniq_signature_record_per_role'),
        ]

    def __str__(self):
        return f"{self.contract_id} / {self.signer_type} / {self.status}"

    @property
    def is_signed(self) -> bool:
        return self.status == SignatureStatus.SIGNED

    def is_past_expiry(self, now=None) -> bool:
        if not self.expires_at:
            return False
        return (now or timezone.now()) >= self.expires_at

    def transition_to(self, new_status, *, signed_at=None) -> bool:
        """Move the in-memory record to `new_status`; returns False when nothing changes."""
        new_status = SignatureStatus(new_status)
        if self.status == new_status:
            return False
        if self.status == SignatureStatus.SIGNED:
            raise TransitionError(
                f'Signature record {self.id} is already signed',
                expected=[SignatureStatus.SIGNED],
                actual=new_status,
            )
        self.status = new_status
        if new_status == SignatureStatus.SIGNED:
            self.signed_at = signed_at or timezone.now()
        return True


class SigningAuditLog(models.Model):
    """
    Append-only audit trail for signature record changes
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    signature_record = models.ForeignKey(
        SignatureRecord,
        on_delete=models.CASCADE,
        related_name='audit_logs',
    )
    event = models.CharField(max_length=50)
    message = models.TextField(blank=True, default='')
    old_status = models.CharField(max_length=20, blank=True, default='')
    new_status = models.CharField(max_length=20, blank=True, default='')
    provider_response = models.JSONField(default=dict, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'contract_signing_audit_logs'
        ordering = ['timestamp']
        indexes = [
            models.Index(fields=['signature_record', 'timestamp'], name='signing_audit_record_ts_idx'),
        ]

    def __str__(self):
        return f"{self.signature_record_id} - {self.event} at {self.timestamp}"


class ContractExportJob(models.Model):
    """
    Async contract PDF export job tracking
    """
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('cancelled', 'Cancelled'),
    ]
    SCALE_MODE_CHOICES = [
        ('fit_page', 'Fit Page'),
        ('fit_width', 'Fit Width'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    contract = models.ForeignKey(
        Contract,
        on_delete=models.CASCADE,
        related_name='export_jobs',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    scale_mode = models.CharField(max_length=20, choices=SCALE_MODE_CHOICES, default='fit_page')
    page_width_mm = models.FloatField(default=210)
    page_height_mm = models.FloatField(default=297)
    page_count = models.IntegerField(null=True, blank=True)
    filename = models.CharField(max_length=255, blank=True, default='')
    artifact = models.FileField(upload_to='contract_exports/', null=True, blank=True)
    error_message = models.TextField(null=True, blank=True, help_text='Error details if failed')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'contract_export_jobs'
        ordering = ['-created_at']

    def __str__(self):
        return f"Export {self.id}: {self.status}"
