from django.conf import settings
from rest_framework import serializers

from .models import (
    Contract, ContractExportJob, SignatureRecord, SignerType, SigningAuditLog,
)
from .pagination import ScaleMode


class SigningAuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = SigningAuditLog
        fields = ['id', 'event', 'message', 'old_status', 'new_status', 'provider_response', 'timestamp']
        read_only_fields = fields


class SignatureRecordSerializer(serializers.ModelSerializer):
    is_signed = serializers.BooleanField(read_only=True)

    class Meta:
        model = SignatureRecord
        fields = [
            'id',
            'contract',
            'signer_type',
            'signer_name',
            'signer_email',
            'external_request_id',
            'signature_url',
            'certificate_url',
            'status',
            'is_signed',
            'requested_at',
            'signed_at',
            'expires_at',
            'last_error',
            'last_status_check_at',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class SignatureRecordDetailSerializer(SignatureRecordSerializer):
    audit_logs = SigningAuditLogSerializer(many=True, read_only=True)

    class Meta(SignatureRecordSerializer.Meta):
        fields = SignatureRecordSerializer.Meta.fields + ['audit_logs']
        read_only_fields = fields


class ContractListSerializer(serializers.ModelSerializer):
    """Small payload serializer for listing contracts."""

    class Meta:
        model = Contract
        fields = [
            'id',
            'title',
            'status',
            'property_ref',
            'application_ref',
            'approved_at',
            'sent_to_signature_at',
            'fully_signed_at',
            'cancelled_at',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class ContractDetailSerializer(serializers.ModelSerializer):
    signature_records = SignatureRecordSerializer(many=True, read_only=True)

    class Meta:
        model = Contract
        fields = [
            'id',
            'title',
            'status',
            'content',
            'parties',
            'property_ref',
            'application_ref',
            'approved_at',
            'approved_by',
            'sent_to_signature_at',
            'fully_signed_at',
            'cancelled_at',
            'signature_records',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class PartySerializer(serializers.Serializer):
    name = serializers.CharField(required=False, allow_blank=True, default='')
    email = serializers.CharField(required=False, allow_blank=True, default='')


class SendToSignatureSerializer(serializers.Serializer):
    """Optional override of the contract's parties snapshot."""
    parties = serializers.DictField(child=PartySerializer(), required=False)

    def validate_parties(self, value):
        unknown = set(value) - set(SignerType.values)
        if unknown:
            raise serializers.ValidationError(f"Unknown signer roles: {', '.join(sorted(unknown))}")
        return value


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='', max_length=2000)


class ContractExportRequestSerializer(serializers.Serializer):
    scale_mode = serializers.ChoiceField(
        choices=[m.value for m in ScaleMode],
        required=False,
        default=ScaleMode.FIT_PAGE.value,
    )
    page_width_mm = serializers.FloatField(required=False, min_value=10, max_value=2000)
    page_height_mm = serializers.FloatField(required=False, min_value=10, max_value=2000)

    def validate(self, attrs):
        width, height = settings.CONTRACT_EXPORT_PAGE_SIZE
        attrs.setdefault('page_width_mm', width)
        attrs.setdefault('page_height_mm', height)
        return attrs


class ContractExportJobSerializer(serializers.ModelSerializer):
    download_url = serializers.SerializerMethodField()

    class Meta:
        model = ContractExportJob
        fields = [
            'id',
            'contract',
            'status',
            'scale_mode',
            'page_width_mm',
            'page_height_mm',
            'page_count',
            'filename',
            'download_url',
            'error_message',
            'created_at',
            'updated_at',
            'completed_at',
        ]
        read_only_fields = fields

    def get_download_url(self, obj):
        if obj.status != 'completed' or not obj.artifact:
            return None
        return f"/api/v1/exports/{obj.id}/download/"


class ProviderCallbackSerializer(serializers.Serializer):
    external_request_id = serializers.CharField(max_length=255)
    status = serializers.CharField(max_length=50)
    completed_at = serializers.DateTimeField(required=False, allow_null=True)
