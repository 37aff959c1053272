"""
Signature orchestration: per-signer dispatch, status refresh and recompute.

The orchestrator owns `SignatureRecord` writes. Contract status changes go
through the injected `ContractStateMachine`; aggregate status is only ever
derived from the full persisted record set in `recompute_status`.
"""
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import validate_email
from django.utils import timezone

from lease_backend.metrics import SIGNATURE_DISPATCHES

from .errors import DispatchError, ExpiryError, ProviderError, TransitionError, ValidationError
from .models import (
    Contract,
    ContractStatus,
    SignatureRecord,
    SignatureStatus,
    SignerType,
    SigningAuditLog,
)
from .pagination import contract_pdf, export_filename
from .signature_providers import SignatureProvider, SignatureRequest, map_vendor_status
from .state_machine import SIGNING_STATES, ContractStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignerRole:
    role: SignerType
    required: bool


# Owner and tenant always sign; a guarantor only when the application has one.
SIGNER_ROLES = (
    SignerRole(SignerType.OWNER, required=True),
    SignerRole(SignerType.TENANT, required=True),
    SignerRole(SignerType.GUARANTOR, required=False),
)


@dataclass(frozen=True)
class RequiredSigner:
    role: SignerType
    name: str
    email: str


@dataclass
class DispatchResult:
    dispatched: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)

    def as_dict(self):
        return {'dispatched': self.dispatched, 'failed': self.failed, 'skipped': self.skipped}


@dataclass
class RefreshResult:
    status: str
    changed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def as_dict(self):
        return {'status': self.status, 'changed': self.changed, 'errors': self.errors}


# Progress order of record statuses. A record only moves to a higher rank, so
# duplicate or out-of-order provider events are ignored.
_RECORD_RANK = {
    SignatureStatus.PENDING: 0,
    SignatureStatus.SENT: 1,
    SignatureStatus.VIEWED: 2,
    SignatureStatus.SIGNED: 3,
    SignatureStatus.REJECTED: 3,
    SignatureStatus.EXPIRED: 3,
    SignatureStatus.CANCELLED: 3,
}

OUTSTANDING_STATUSES = (SignatureStatus.PENDING, SignatureStatus.SENT, SignatureStatus.VIEWED)


def _payload(obj) -> dict:
    if obj is None:
        return {}
    data = asdict(obj) if hasattr(obj, '__dataclass_fields__') else dict(obj)
    return json.loads(json.dumps(data, cls=DjangoJSONEncoder))


def _default_document_builder(contract: Contract) -> bytes:
    pdf_bytes, _layout = contract_pdf(contract)
    return pdf_bytes


class SignatureOrchestrator:
    """
    Coordinates signing requests for every required signer of a contract.

    Args:
        provider: SignatureProvider used for send / check_status / cancel
        state_machine: ContractStateMachine applying contract transitions
        document_builder: callable(contract) -> PDF bytes sent to the provider
    """

    def __init__(
        self,
        provider: SignatureProvider,
        state_machine: Optional[ContractStateMachine] = None,
        document_builder: Optional[Callable[[Contract], bytes]] = None,
    ):
        self.provider = provider
        self.state_machine = state_machine or ContractStateMachine()
        self.document_builder = document_builder or _default_document_builder

    # ------------------------------------------------------------------
    # Signers
    # ------------------------------------------------------------------

    @staticmethod
    def required_signers(parties) -> List[RequiredSigner]:
        parties = parties if isinstance(parties, dict) else {}
        signers = []
        for signer_role in SIGNER_ROLES:
            entry = parties.get(signer_role.role.value)
            if not entry and not signer_role.required:
                continue
            entry = entry if isinstance(entry, dict) else {}
            signers.append(RequiredSigner(
                role=signer_role.role,
                name=str(entry.get('name') or '').strip(),
                email=str(entry.get('email') or '').strip(),
            ))
        return signers

    @staticmethod
    def _validate(signer: RequiredSigner) -> None:
        if not signer.name:
            raise ValidationError(f'{signer.role.label} name is required', details={'signer_type': signer.role.value})
        if not signer.email:
            raise ValidationError(f'{signer.role.label} email is required', details={'signer_type': signer.role.value})
        try:
            validate_email(signer.email)
        except DjangoValidationError:
            raise ValidationError(
                f'{signer.role.label} email is invalid: {signer.email}',
                details={'signer_type': signer.role.value},
            ) from None

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @staticmethod
    def _audit(record: SignatureRecord, event: str, message: str, old_status='', new_status='', response=None):
        SigningAuditLog.objects.create(
            signature_record=record,
            event=event,
            message=message,
            old_status=old_status or '',
            new_status=new_status or '',
            provider_response=_payload(response),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _send_one(self, contract: Contract, signer: RequiredSigner, document: bytes, event: str):
        """Send one request and upsert its record; returns (record, error or None)."""
        request = SignatureRequest(
            contract_id=str(contract.id),
            signer_type=signer.role.value,
            signer_name=signer.name,
            signer_email=signer.email,
            document_bytes=document,
            document_name=export_filename(contract),
            callback_url=getattr(settings, 'ESIGN_CALLBACK_URL', '') or None,
        )

        response = None
        try:
            response = self.provider.send(request)
            if not response.success:
                error = response.error or 'Provider rejected the signing request'
            elif not response.external_request_id:
                error = 'Provider did not return a request id'
            else:
                error = None
        except ProviderError as e:
            error = str(e)

        previous = SignatureRecord.objects.filter(contract=contract, signer_type=signer.role).first()
        old_status = previous.status if previous else ''

        if error:
            defaults = {
                'signer_name': signer.name,
                'signer_email': signer.email,
                'status': SignatureStatus.PENDING,
                'external_request_id': None,
                'signature_url': None,
                'requested_at': None,
                'expires_at': None,
                'last_error': error,
            }
        else:
            now = timezone.now()
            defaults = {
                'signer_name': signer.name,
                'signer_email': signer.email,
                'status': SignatureStatus.SENT,
                'external_request_id': response.external_request_id,
                'signature_url': response.signature_url,
                'requested_at': response.requested_at or now,
                'expires_at': response.expires_at or now + timedelta(days=settings.ESIGN_EXPIRES_IN_DAYS),
                'signed_at': None,
                'certificate_url': None,
                'last_error': None,
            }

        record, _created = SignatureRecord.objects.update_or_create(
            contract=contract,
            signer_type=signer.role,
            defaults=defaults,
        )

        if error:
            logger.warning(f"Signature request for {signer.role.value} on contract {contract.id} failed: {error}")
            SIGNATURE_DISPATCHES.labels(signer_type=signer.role.value, outcome='failed').inc()
            self._audit(record, f'{event}_failed', error, old_status, record.status, response)
        else:
            logger.info(f"Signature request {record.external_request_id} sent to {signer.role.value} for contract {contract.id}")
            SIGNATURE_DISPATCHES.labels(signer_type=signer.role.value, outcome='sent').inc()
            self._audit(
                record,
                event,
                f'Signing request sent to {signer.email}',
                old_status,
                record.status,
                response,
            )
        return record, error

    def _record_skipped(self, contract: Contract, signer: RequiredSigner, error: str) -> SignatureRecord:
        """Keep a `pending` placeholder for a signer that could not be validated."""
        previous = SignatureRecord.objects.filter(contract=contract, signer_type=signer.role).first()
        old_status = previous.status if previous else ''
        record, _created = SignatureRecord.objects.update_or_create(
            contract=contract,
            signer_type=signer.role,
            defaults={
                'signer_name': signer.name,
                'signer_email': signer.email,
                'status': SignatureStatus.PENDING,
                'external_request_id': None,
                'signature_url': None,
                'requested_at': None,
                'expires_at': None,
                'last_error': error,
            },
        )
        self._audit(record, 'dispatch_skipped', error, old_status, record.status)
        return record

    def dispatch(self, contract: Contract, parties=None) -> DispatchResult:
        """Create one signing request per required signer.

        Signers failing validation and provider failures both leave a
        `pending` record with `last_error`, so every required role has a
        record and the contract cannot be fully signed without it.
        Raises DispatchError when no signer was reached.
        """
        parties = contract.parties if parties is None else parties
        result = DispatchResult()
        document = None

        for signer in self.required_signers(parties):
            role = signer.role.value
            existing = SignatureRecord.objects.filter(contract=contract, signer_type=signer.role).first()
            if existing and (
                existing.is_signed
                or (existing.status in (SignatureStatus.SENT, SignatureStatus.VIEWED) and not existing.is_past_expiry())
            ):
                # Already reached by an earlier dispatch or retry.
                result.dispatched.append(role)
                continue

            try:
                self._validate(signer)
            except ValidationError as e:
                logger.warning(f"Skipping {role} for contract {contract.id}: {e}")
                SIGNATURE_DISPATCHES.labels(signer_type=role, outcome='skipped').inc()
                result.skipped[role] = str(e)
                self._record_skipped(contract, signer, str(e))
                continue

            if document is None:
                document = self.document_builder(contract)

            _record, error = self._send_one(contract, signer, document, event='dispatched')
            if error:
                result.failed[role] = error
            else:
                result.dispatched.append(role)

        if not result.dispatched:
            raise DispatchError(
                f'No signer could be reached for contract {contract.id}',
                failures={**result.skipped, **result.failed},
            )

        logger.info(
            "Dispatched contract %s: sent=%s failed=%s skipped=%s",
            contract.id,
            result.dispatched,
            sorted(result.failed),
            sorted(result.skipped),
        )
        return result

    def retry_dispatch(self, record: SignatureRecord, signer_name=None, signer_email=None) -> SignatureRecord:
        """Resend a failed (`pending`) or `expired` request as a fresh provider request.

        `signer_name` and `signer_email` replace the stored details, which is
        how a signer skipped for invalid details gets reached.
        """
        contract = record.contract
        if contract.status not in (ContractStatus.APPROVED, ContractStatus.SENT_TO_SIGNATURE, ContractStatus.PARTIALLY_SIGNED):
            raise TransitionError(
                f'Contract {contract.id} does not accept new signing requests',
                expected=[ContractStatus.APPROVED, ContractStatus.SENT_TO_SIGNATURE, ContractStatus.PARTIALLY_SIGNED],
                actual=contract.status,
            )
        if record.status not in (SignatureStatus.PENDING, SignatureStatus.EXPIRED):
            raise TransitionError(
                'Only pending or expired signature requests can be retried',
                expected=[SignatureStatus.PENDING, SignatureStatus.EXPIRED],
                actual=record.status,
            )

        signer = RequiredSigner(
            role=SignerType(record.signer_type),
            name=(signer_name or record.signer_name or '').strip(),
            email=(signer_email or record.signer_email or '').strip(),
        )
        self._validate(signer)

        record, error = self._send_one(contract, signer, self.document_builder(contract), event='retried')
        if error:
            raise DispatchError(f'Retry failed for {signer.role.value}', failures={signer.role.value: error})

        if contract.status in SIGNING_STATES:
            self.recompute_status(contract.id)
        return record

    # ------------------------------------------------------------------
    # Record updates
    # ------------------------------------------------------------------

    def _apply_status(
        self,
        record: SignatureRecord,
        new_status,
        *,
        event: str,
        signed_at=None,
        certificate_url=None,
        response=None,
        message: str = '',
        last_error=None,
    ) -> bool:
        """Persist a record status change if it moves the record forward.

        `last_error` is only overwritten when given; a forward move with no
        error clears it.
        """
        new_status = SignatureStatus(new_status)
        old_status = SignatureStatus(record.status)
        record.last_status_check_at = timezone.now()
        if last_error is not None:
            record.last_error = last_error

        if new_status == old_status or _RECORD_RANK[new_status] <= _RECORD_RANK[old_status]:
            if new_status != old_status:
                logger.info(
                    "Ignoring %s for record %s: %s does not follow %s",
                    event,
                    record.id,
                    new_status.value,
                    old_status.value,
                )
            record.save(update_fields=['last_status_check_at', 'last_error', 'updated_at'])
            return False

        if last_error is None:
            record.last_error = None
        record.transition_to(new_status, signed_at=signed_at)
        if certificate_url:
            record.certificate_url = certificate_url
        record.save(update_fields=[
            'status',
            'signed_at',
            'certificate_url',
            'last_status_check_at',
            'last_error',
            'updated_at',
        ])
        self._audit(
            record,
            event,
            message or f'Status changed from {old_status.value} to {new_status.value}',
            old_status.value,
            new_status.value,
            response,
        )
        return True

    def _refresh(self, record: SignatureRecord) -> bool:
        if not record.external_request_id:
            raise ValidationError(
                f'Signature record {record.id} has no provider request',
                details={'signer_type': record.signer_type},
            )

        try:
            result = self.provider.check_status(record.external_request_id)
        except ProviderError as e:
            now = timezone.now()
            SignatureRecord.objects.filter(id=record.id).update(last_error=str(e), last_status_check_at=now)
            record.last_error = str(e)
            record.last_status_check_at = now
            self._audit(record, 'status_check_failed', str(e), record.status, record.status)
            logger.warning('Signature status poll failed for %s: %s', record.external_request_id, e)
            raise

        return self._apply_status(
            record,
            result.status,
            event='status_checked',
            signed_at=result.signed_at,
            certificate_url=result.certificate_url,
            response=result,
        )

    def refresh_record(self, record: SignatureRecord) -> bool:
        """Poll the provider for one record, then recompute the contract."""
        changed = self._refresh(record)
        self.recompute_status(record.contract_id)
        return changed

    def refresh_contract(self, contract: Contract) -> RefreshResult:
        """Poll every outstanding record; per-record failures are collected, not raised."""
        changed = []
        errors = {}
        records = contract.signature_records.filter(
            status__in=OUTSTANDING_STATUSES,
            external_request_id__isnull=False,
        )
        for record in records:
            try:
                if self._refresh(record):
                    changed.append(record.signer_type)
            except ProviderError as e:
                errors[record.signer_type] = str(e)

        self.recompute_status(contract.id)
        contract.refresh_from_db()
        return RefreshResult(status=contract.status, changed=changed, errors=errors)

    def handle_provider_callback(self, external_request_id: str, vendor_status, signed_at=None) -> SignatureRecord:
        """Apply a provider webhook. Unknown vendor statuses raise ProviderError."""
        new_status = map_vendor_status(vendor_status)
        record = SignatureRecord.objects.filter(external_request_id=external_request_id).first()
        if record is None:
            raise ValidationError(
                f'Unknown signature request: {external_request_id}',
                details={'external_request_id': external_request_id},
            )

        if record.contract.status == ContractStatus.CANCELLED:
            logger.info("Ignoring callback for %s on cancelled contract %s", external_request_id, record.contract_id)
            return record

        self._apply_status(
            record,
            new_status,
            event='callback',
            signed_at=signed_at,
            response={'external_request_id': external_request_id, 'vendor_status': str(vendor_status)},
        )
        self.recompute_status(record.contract_id)
        return record

    def complete_signature(self, record: SignatureRecord, now=None) -> SignatureRecord:
        """Signer completes in-app."""
        if record.is_signed:
            return record
        if record.status in (SignatureStatus.REJECTED, SignatureStatus.CANCELLED):
            raise TransitionError(
                f'Signature record {record.id} is {record.status}',
                expected=list(OUTSTANDING_STATUSES),
                actual=record.status,
            )

        now = now or timezone.now()
        if record.status == SignatureStatus.EXPIRED or record.is_past_expiry(now):
            self._apply_status(record, SignatureStatus.EXPIRED, event='expired', message='Signing window has closed')
            raise ExpiryError(
                f'Signing request for {record.signer_type} expired; a new request is required',
                details={'signer_type': record.signer_type, 'expires_at': record.expires_at.isoformat() if record.expires_at else None},
            )

        if not record.external_request_id:
            raise TransitionError(
                f'Signature record {record.id} was never sent to the signer',
                expected=[SignatureStatus.SENT, SignatureStatus.VIEWED],
                actual=record.status,
            )

        contract_status = Contract.objects.filter(id=record.contract_id).values_list('status', flat=True).first()
        if contract_status not in SIGNING_STATES:
            raise TransitionError(
                f'Contract {record.contract_id} is not awaiting signatures',
                expected=list(SIGNING_STATES),
                actual=contract_status,
            )

        self._apply_status(record, SignatureStatus.SIGNED, event='signed', signed_at=now, message=f'Signed by {record.signer_email}')
        self.recompute_status(record.contract_id)
        return record

    def reject_signature(self, record: SignatureRecord, reason: str = '') -> SignatureRecord:
        if record.status == SignatureStatus.REJECTED:
            return record
        if record.status not in OUTSTANDING_STATUSES:
            raise TransitionError(
                f'Signature record {record.id} is {record.status}',
                expected=list(OUTSTANDING_STATUSES),
                actual=record.status,
            )
        self._apply_status(
            record,
            SignatureStatus.REJECTED,
            event='rejected',
            message=reason or f'Declined by {record.signer_email}',
        )
        self.recompute_status(record.contract_id)
        return record

    def expire_overdue(self, contract: Contract, now=None) -> List[str]:
        now = now or timezone.now()
        expired = []
        records = contract.signature_records.filter(status__in=OUTSTANDING_STATUSES, expires_at__lte=now)
        for record in records:
            if self._apply_status(record, SignatureStatus.EXPIRED, event='expired', message='Signing window has closed'):
                expired.append(record.signer_type)
        if expired:
            logger.info(f"Expired {len(expired)} signature request(s) on contract {contract.id}: {expired}")
            self.recompute_status(contract.id)
        return expired

    # ------------------------------------------------------------------
    # Contract level
    # ------------------------------------------------------------------

    def recompute_status(self, contract_id) -> bool:
        """Re-derive the contract status from all of its persisted records."""
        contract = Contract.objects.get(id=contract_id)
        if contract.status not in SIGNING_STATES:
            logger.debug("Skipping recompute for contract %s in %s", contract_id, contract.status)
            return False
        records = list(SignatureRecord.objects.filter(contract_id=contract_id))
        return self.state_machine.apply_recompute(contract, records)

    def send_to_signature(self, contract: Contract, parties=None) -> DispatchResult:
        return self.state_machine.send_to_signature(contract, parties, self)

    def cancel_contract(self, contract: Contract, reason: str = '') -> Contract:
        """Cancel the contract, then void outstanding provider requests best-effort."""
        self.state_machine.cancel(contract, reason)

        for record in contract.signature_records.filter(status__in=OUTSTANDING_STATUSES):
            if record.external_request_id:
                try:
                    self.provider.cancel(record.external_request_id, reason)
                except ProviderError as e:
                    logger.warning('Provider cancel failed for %s: %s', record.external_request_id, e)
                    cancel_error = str(e)
                else:
                    cancel_error = None
            else:
                cancel_error = None
            self._apply_status(
                record,
                SignatureStatus.CANCELLED,
                event='cancelled',
                message=reason or 'Contract cancelled',
                last_error=cancel_error,
            )
        return contract
