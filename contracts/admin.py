from django.contrib import admin

from .models import Contract, ContractExportJob, SignatureRecord, SigningAuditLog


class SignatureRecordInline(admin.TabularInline):
    model = SignatureRecord
    extra = 0
    fields = ('signer_type', 'signer_name', 'signer_email', 'status', 'signed_at', 'expires_at', 'last_error')
    readonly_fields = fields
    can_delete = False


@admin.register(Contract)
class ContractAdmin(admin.ModelAdmin):
    list_display = ('title', 'status', 'property_ref', 'approved_at', 'fully_signed_at', 'created_at')
    list_filter = ('status',)
    search_fields = ('title', 'property_ref', 'application_ref')
    # Status moves only through the state machine.
    readonly_fields = (
        'status', 'approved_at', 'approved_by', 'sent_to_signature_at',
        'fully_signed_at', 'cancelled_at', 'created_at', 'updated_at',
    )
    inlines = [SignatureRecordInline]


@admin.register(SignatureRecord)
class SignatureRecordAdmin(admin.ModelAdmin):
    list_display = ('contract', 'signer_type', 'signer_email', 'status', 'signed_at', 'expires_at')
    list_filter = ('status', 'signer_type')
    search_fields = ('signer_name', 'signer_email', 'external_request_id')
    readonly_fields = [f.name for f in SignatureRecord._meta.fields]


@admin.register(SigningAuditLog)
class SigningAuditLogAdmin(admin.ModelAdmin):
    list_display = ('signature_record', 'event', 'old_status', 'new_status', 'timestamp')
    list_filter = ('event',)
    search_fields = ('message',)


@admin.register(ContractExportJob)
class ContractExportJobAdmin(admin.ModelAdmin):
    list_display = ('contract', 'status', 'scale_mode', 'page_count', 'created_at', 'completed_at')
    list_filter = ('status', 'scale_mode')
