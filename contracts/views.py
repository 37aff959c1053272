"""
Contract signing API views

Contract approval, send-to-signature, per-signer actions, provider
callbacks and PDF export jobs.
"""
import hmac
import logging

from django.conf import settings
from django.db import transaction
from django.http import FileResponse
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from .errors import (
    DispatchError, ExpiryError, ProviderError, RenderError, SignatureWorkflowError,
    TransitionError, ValidationError,
)
from .models import Contract, ContractExportJob, SignatureRecord
from .serializers import (
    ContractDetailSerializer, ContractExportJobSerializer, ContractExportRequestSerializer,
    ContractListSerializer, PartySerializer, ProviderCallbackSerializer, ReasonSerializer,
    SendToSignatureSerializer, SignatureRecordDetailSerializer, SignatureRecordSerializer,
)
from .signature_orchestrator import SignatureOrchestrator
from .signature_providers import get_signature_provider
from .tasks import export_contract_pdf

logger = logging.getLogger(__name__)


ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    TransitionError: status.HTTP_409_CONFLICT,
    DispatchError: status.HTTP_502_BAD_GATEWAY,
    ProviderError: status.HTTP_502_BAD_GATEWAY,
    RenderError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ExpiryError: status.HTTP_410_GONE,
}


def _error_response(exc: SignatureWorkflowError) -> Response:
    http_status = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.warning(f"{exc.code}: {exc}")
    return Response(exc.as_dict(), status=http_status)


def _get_orchestrator() -> SignatureOrchestrator:
    return SignatureOrchestrator(get_signature_provider())


def _user_label(request) -> str:
    user = getattr(request, 'user', None)
    if not user or not user.is_authenticated:
        return ''
    return str(getattr(user, 'username', '') or user.pk)


class ContractViewSet(viewsets.ReadOnlyModelViewSet):
    """
    API endpoint for contracts: approval, signature lifecycle and export
    """
    permission_classes = [IsAuthenticated]
    queryset = Contract.objects.all()

    def get_serializer_class(self):
        if self.action == 'list':
            return ContractListSerializer
        return ContractDetailSerializer

    def get_queryset(self):
        qs = Contract.objects.all()
        status_filter = self.request.query_params.get('status')
        if status_filter:
            qs = qs.filter(status=status_filter)
        if self.action == 'retrieve':
            qs = qs.prefetch_related('signature_records')
        return qs

    def _detail(self, contract, extra=None, http_status=status.HTTP_200_OK):
        contract.refresh_from_db()
        payload = {'contract': ContractDetailSerializer(contract).data}
        payload.update(extra or {})
        return Response(payload, status=http_status)

    @action(detail=True, methods=['post'])
    def approve(self, request, pk=None):
        """
        POST /api/v1/contracts/{id}/approve/
        Approve a draft contract.
        """
        contract = self.get_object()
        try:
            orchestrator = _get_orchestrator()
            orchestrator.state_machine.approve(contract, approved_by=_user_label(request))
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._detail(contract)

    @action(detail=True, methods=['post'], url_path='send-to-signature')
    def send_to_signature(self, request, pk=None):
        """
        POST /api/v1/contracts/{id}/send-to-signature/

        Request:
        {
            "parties": {                       # optional, defaults to the contract snapshot
                "owner": {"name": "...", "email": "..."},
                "tenant": {"name": "...", "email": "..."},
                "guarantor": {"name": "...", "email": "..."}
            }
        }
        """
        contract = self.get_object()
        serializer = SendToSignatureSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        parties = serializer.validated_data.get('parties')

        try:
            result = _get_orchestrator().send_to_signature(contract, parties)
        except SignatureWorkflowError as e:
            return _error_response(e)

        return self._detail(contract, {'dispatch': result.as_dict()})

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        contract = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            _get_orchestrator().cancel_contract(contract, serializer.validated_data['reason'])
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._detail(contract)

    @action(detail=True, methods=['post'], url_path='refresh-signatures')
    def refresh_signatures(self, request, pk=None):
        """
        POST /api/v1/contracts/{id}/refresh-signatures/
        Expire overdue requests, poll the provider, recompute status.
        """
        contract = self.get_object()
        try:
            orchestrator = _get_orchestrator()
            expired = orchestrator.expire_overdue(contract)
            result = orchestrator.refresh_contract(contract)
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._detail(contract, {'refresh': result.as_dict(), 'expired': expired})

    @action(detail=True, methods=['get'])
    def signatures(self, request, pk=None):
        contract = self.get_object()
        records = contract.signature_records.all()
        return Response({
            'contract_id': str(contract.id),
            'status': contract.status,
            'signatures': SignatureRecordSerializer(records, many=True).data,
        })

    @action(detail=True, methods=['post'])
    def export(self, request, pk=None):
        """
        POST /api/v1/contracts/{id}/export/
        Queue a PDF export; poll GET /api/v1/exports/{job_id}/.
        """
        contract = self.get_object()
        serializer = ContractExportRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        job = ContractExportJob.objects.create(contract=contract, **serializer.validated_data)
        transaction.on_commit(lambda: export_contract_pdf.delay(str(job.id)))
        logger.info(f"Queued export job {job.id} for contract {contract.id}")

        return Response(ContractExportJobSerializer(job).data, status=status.HTTP_202_ACCEPTED)


class SignatureRecordViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Per-signer signature records
    """
    permission_classes = [IsAuthenticated]
    queryset = SignatureRecord.objects.select_related('contract')

    def get_serializer_class(self):
        if self.action == 'retrieve':
            return SignatureRecordDetailSerializer
        return SignatureRecordSerializer

    def _record_response(self, record, http_status=status.HTTP_200_OK):
        record.refresh_from_db()
        return Response({
            'signature': SignatureRecordSerializer(record).data,
            'contract_status': Contract.objects.filter(id=record.contract_id).values_list('status', flat=True).first(),
        }, status=http_status)

    @action(detail=True, methods=['post'])
    def sign(self, request, pk=None):
        record = self.get_object()
        try:
            _get_orchestrator().complete_signature(record)
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._record_response(record)

    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        record = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            _get_orchestrator().reject_signature(record, serializer.validated_data['reason'])
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._record_response(record)

    @action(detail=True, methods=['post'])
    def retry(self, request, pk=None):
        """
        POST /api/v1/signatures/{id}/retry/
        Optional body {"name": "...", "email": "..."} replaces the signer details.
        """
        record = self.get_object()
        serializer = PartySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            _get_orchestrator().retry_dispatch(
                record,
                signer_name=serializer.validated_data['name'] or None,
                signer_email=serializer.validated_data['email'] or None,
            )
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._record_response(record)

    @action(detail=True, methods=['post'])
    def refresh(self, request, pk=None):
        record = self.get_object()
        try:
            _get_orchestrator().refresh_record(record)
        except SignatureWorkflowError as e:
            return _error_response(e)
        return self._record_response(record)


class ContractExportJobViewSet(viewsets.ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = ContractExportJobSerializer
    queryset = ContractExportJob.objects.all()

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        job = self.get_object()
        updated = ContractExportJob.objects.filter(
            id=job.id,
            status__in=['pending', 'processing'],
        ).update(status='cancelled')
        job.refresh_from_db()
        if not updated:
            return Response(
                {
                    'error': f'Export job is already {job.status}',
                    'code': 'transition_error',
                    'details': {'actual': job.status},
                },
                status=status.HTTP_409_CONFLICT,
            )
        return Response(ContractExportJobSerializer(job).data)

    @action(detail=True, methods=['get'])
    def download(self, request, pk=None):
        job = self.get_object()
        if job.status != 'completed' or not job.artifact:
            return Response(
                {'error': 'Export is not ready', 'code': 'not_ready', 'details': {'status': job.status}},
                status=status.HTTP_409_CONFLICT,
            )
        return FileResponse(
            job.artifact.open('rb'),
            as_attachment=True,
            filename=job.filename,
            content_type='application/pdf',
        )


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def esign_callback(request):
    """
    POST /api/v1/esign/callback/
    Provider webhook. Requires the X-Esign-Secret header when
    ESIGN_CALLBACK_SECRET is configured.

    Request:
    {
        "external_request_id": "...",
        "status": "completed",
        "completed_at": "2024-01-01T00:00:00Z"   # optional
    }
    """
    secret = getattr(settings, 'ESIGN_CALLBACK_SECRET', '')
    if secret:
        provided = request.headers.get('X-Esign-Secret') or ''
        if not hmac.compare_digest(provided, secret):
            logger.warning('Rejected e-sign callback with a bad secret')
            return Response({'error': 'Invalid callback secret'}, status=status.HTTP_403_FORBIDDEN)

    serializer = ProviderCallbackSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    try:
        record = _get_orchestrator().handle_provider_callback(
            data['external_request_id'],
            data['status'],
            signed_at=data.get('completed_at'),
        )
    except SignatureWorkflowError as e:
        return _error_response(e)

    record.refresh_from_db()
    return Response({
        'success': True,
        'signature_id': str(record.id),
        'status': record.status,
        'contract_status': Contract.objects.get(id=record.contract_id).status,
    }, status=status.HTTP_200_OK)
