"""
Tests for per-signer dispatch, signing and status recompute
"""
from datetime import timedelta

from django.test import TestCase

from contracts.errors import DispatchError, ExpiryError, ProviderError, TransitionError
from contracts.models import (
    Contract, ContractStatus, SignatureRecord, SignatureStatus, SigningAuditLog,
)
from contracts.signature_orchestrator import SignatureOrchestrator
from contracts.signature_providers import SimulatedSignatureProvider

from .helpers import (
    PARTIES, PARTIES_WITH_GUARANTOR, FakeClock, FlakyProvider, UnreachableStatusProvider,
    fake_document, make_contract,
)


class SignatureOrchestratorTestCase(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.provider = FlakyProvider(clock=self.clock)
        self.orchestrator = SignatureOrchestrator(self.provider, document_builder=fake_document)

    def approved_contract(self, parties=None):
        return make_contract(status=ContractStatus.APPROVED, parties=parties)

    def send(self, contract, parties=None):
        return self.orchestrator.send_to_signature(contract, parties)

    def record(self, contract, role):
        return SignatureRecord.objects.get(contract=contract, signer_type=role)


class RequiredSignersTests(TestCase):
    def test_owner_and_tenant_only(self):
        roles = [s.role.value for s in SignatureOrchestrator.required_signers(PARTIES)]
        self.assertEqual(roles, ['owner', 'tenant'])

    def test_guarantor_when_present(self):
        signers = SignatureOrchestrator.required_signers(PARTIES_WITH_GUARANTOR)
        self.assertEqual([s.role.value for s in signers], ['owner', 'tenant', 'guarantor'])
        self.assertEqual(signers[2].email, 'guarantor@example.com')

    def test_missing_required_party_is_still_listed(self):
        signers = SignatureOrchestrator.required_signers({'tenant': PARTIES['tenant']})
        self.assertEqual(signers[0].role.value, 'owner')
        self.assertEqual(signers[0].email, '')


class DispatchTests(SignatureOrchestratorTestCase):
    def test_two_party_dispatch(self):
        contract = self.approved_contract()

        result = self.send(contract)

        self.assertEqual(result.dispatched, ['owner', 'tenant'])
        self.assertEqual(contract.status, ContractStatus.SENT_TO_SIGNATURE)
        self.assertIsNotNone(contract.sent_to_signature_at)
        records = SignatureRecord.objects.filter(contract=contract)
        self.assertEqual(records.count(), 2)
        for record in records:
            self.assertEqual(record.status, SignatureStatus.SENT)
            self.assertTrue(record.external_request_id.startswith(f'sim_{contract.id}_{record.signer_type}_'))
            self.assertIn('/signature/', record.signature_url)
            self.assertEqual(record.expires_at - record.requested_at, timedelta(minutes=30))

    def test_guarantor_gets_a_third_record(self):
        contract = self.approved_contract(parties=PARTIES_WITH_GUARANTOR)

        self.send(contract)

        self.assertEqual(
            sorted(SignatureRecord.objects.filter(contract=contract).values_list('signer_type', flat=True)),
            ['guarantor', 'owner', 'tenant'],
        )

    def test_explicit_parties_override_snapshot(self):
        contract = self.approved_contract()

        self.send(contract, PARTIES_WITH_GUARANTOR)

        self.assertEqual(SignatureRecord.objects.filter(contract=contract).count(), 3)

    def test_partial_failure_keeps_pending_record(self):
        self.provider.failing_roles = {'tenant'}
        contract = self.approved_contract()

        result = self.send(contract)

        self.assertEqual(result.dispatched, ['owner'])
        self.assertIn('tenant', result.failed)
        self.assertEqual(contract.status, ContractStatus.SENT_TO_SIGNATURE)
        tenant = self.record(contract, 'tenant')
        self.assertEqual(tenant.status, SignatureStatus.PENDING)
        self.assertIsNone(tenant.external_request_id)
        self.assertIn('vendor unavailable', tenant.last_error)
        self.assertTrue(tenant.audit_logs.filter(event='dispatched_failed').exists())

    def test_total_failure_leaves_contract_approved(self):
        self.provider.failing_roles = {'owner', 'tenant'}
        contract = self.approved_contract()

        with self.assertRaises(DispatchError) as ctx:
            self.send(contract)

        self.assertEqual(set(ctx.exception.failures), {'owner', 'tenant'})
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.APPROVED)
        # Failed records stay around for a manual retry.
        self.assertEqual(
            set(SignatureRecord.objects.filter(contract=contract).values_list('status', flat=True)),
            {SignatureStatus.PENDING},
        )

    def test_invalid_signer_keeps_pending_placeholder(self):
        parties = {**PARTIES, 'guarantor': {'name': 'Grace Guarantor', 'email': ''}}
        contract = self.approved_contract(parties=parties)

        result = self.send(contract)

        self.assertIn('guarantor', result.skipped)
        guarantor = self.record(contract, 'guarantor')
        self.assertEqual(guarantor.status, SignatureStatus.PENDING)
        self.assertIsNone(guarantor.external_request_id)
        self.assertIn('email is required', guarantor.last_error)
        self.assertTrue(guarantor.audit_logs.filter(event='dispatch_skipped').exists())

    def test_malformed_email_is_skipped(self):
        parties = {**PARTIES, 'tenant': {'name': 'Tom Tenant', 'email': 'not-an-email'}}
        contract = self.approved_contract(parties=parties)

        result = self.send(contract)

        self.assertEqual(result.dispatched, ['owner'])
        self.assertIn('tenant', result.skipped)
        self.assertEqual(
            sorted(SignatureRecord.objects.filter(contract=contract).values_list('signer_type', flat=True)),
            ['owner', 'tenant'],
        )

    def test_skipped_tenant_blocks_full_signature(self):
        parties = {**PARTIES, 'tenant': {'name': 'Tom Tenant', 'email': 'not-an-email'}}
        contract = self.approved_contract(parties=parties)
        self.send(contract)

        self.orchestrator.complete_signature(self.record(contract, 'owner'), now=self.clock.now)

        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.PARTIALLY_SIGNED)
        tenant = self.record(contract, 'tenant')
        with self.assertRaises(TransitionError):
            self.orchestrator.complete_signature(tenant, now=self.clock.now)
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.PARTIALLY_SIGNED)

    def test_skipped_signer_is_reached_by_retry_with_new_details(self):
        parties = {**PARTIES, 'tenant': {'name': 'Tom Tenant', 'email': 'not-an-email'}}
        contract = self.approved_contract(parties=parties)
        self.send(contract)

        tenant = self.orchestrator.retry_dispatch(self.record(contract, 'tenant'), signer_email='tenant@example.com')

        self.assertEqual(tenant.status, SignatureStatus.SENT)
        self.assertEqual(tenant.signer_email, 'tenant@example.com')
        self.assertIsNone(tenant.last_error)
        for role in ('owner', 'tenant'):
            self.orchestrator.complete_signature(self.record(contract, role), now=self.clock.now)
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.FULLY_SIGNED)

    def test_draft_contract_is_not_dispatched(self):
        contract = make_contract()

        with self.assertRaises(TransitionError):
            self.send(contract)
        self.assertFalse(SignatureRecord.objects.filter(contract=contract).exists())

    def test_redispatch_after_retry_does_not_resend(self):
        self.provider.failing_roles = {'owner', 'tenant'}
        contract = self.approved_contract()
        with self.assertRaises(DispatchError):
            self.send(contract)

        self.provider.failing_roles = set()
        self.orchestrator.retry_dispatch(self.record(contract, 'owner'))
        owner_id = self.record(contract, 'owner').external_request_id

        self.clock.advance(seconds=5)
        self.send(contract)

        self.assertEqual(self.record(contract, 'owner').external_request_id, owner_id)
        self.assertEqual(self.record(contract, 'tenant').status, SignatureStatus.SENT)


class SigningTests(SignatureOrchestratorTestCase):
    def test_one_of_two_signed_is_partial_then_full(self):
        contract = self.approved_contract()
        self.send(contract)

        self.orchestrator.complete_signature(self.record(contract, 'owner'))
        contract.refresh_from_db()
        self.assertEqual(contract.status, ContractStatus.PARTIALLY_SIGNED)

        self.orchestrator.complete_signature(self.record(contract, 'tenant'))
        contract.refresh_from_db()
        self.assertEqual(contract.status, ContractStatus.FULLY_SIGNED)
        self.assertIsNotNone(contract.fully_signed_at)

    def test_two_of_three_signed_is_partial(self):
        contract = self.approved_contract(parties=PARTIES_WITH_GUARANTOR)
        self.send(contract)

        self.orchestrator.complete_signature(self.record(contract, 'owner'))
        self.orchestrator.complete_signature(self.record(contract, 'tenant'))

        contract.refresh_from_db()
        self.assertEqual(contract.status, ContractStatus.PARTIALLY_SIGNED)

    def test_signing_twice_is_a_noop(self):
        contract = self.approved_contract()
        self.send(contract)
        owner = self.record(contract, 'owner')

        self.orchestrator.complete_signature(owner)
        signed_at = self.record(contract, 'owner').signed_at
        self.orchestrator.complete_signature(self.record(contract, 'owner'))

        self.assertEqual(self.record(contract, 'owner').signed_at, signed_at)
        self.assertEqual(owner.audit_logs.filter(event='signed').count(), 1)

    def test_recompute_status_is_idempotent(self):
        contract = self.approved_contract()
        self.send(contract)
        self.orchestrator.complete_signature(self.record(contract, 'owner'))

        self.assertFalse(self.orchestrator.recompute_status(contract.id))
        self.assertFalse(self.orchestrator.recompute_status(contract.id))
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.PARTIALLY_SIGNED)

    def test_signed_record_ignores_later_callbacks(self):
        contract = self.approved_contract()
        self.send(contract)
        owner = self.record(contract, 'owner')
        self.orchestrator.complete_signature(owner)

        self.orchestrator.handle_provider_callback(owner.external_request_id, 'declined')
        self.orchestrator.handle_provider_callback(owner.external_request_id, 'sent')

        owner.refresh_from_db()
        self.assertEqual(owner.status, SignatureStatus.SIGNED)
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.PARTIALLY_SIGNED)

    def test_callback_completes_signature(self):
        contract = self.approved_contract()
        self.send(contract)

        for role in ('owner', 'tenant'):
            record = self.record(contract, role)
            self.orchestrator.handle_provider_callback(record.external_request_id, 'completed')
            # Duplicate delivery is harmless.
            self.orchestrator.handle_provider_callback(record.external_request_id, 'completed')

        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.FULLY_SIGNED)

    def test_unknown_callback_status_leaves_record_untouched(self):
        contract = self.approved_contract()
        self.send(contract)
        owner = self.record(contract, 'owner')

        with self.assertRaises(ProviderError):
            self.orchestrator.handle_provider_callback(owner.external_request_id, 'teleported')

        self.assertEqual(self.record(contract, 'owner').status, SignatureStatus.SENT)

    def test_reject_blocks_signing(self):
        contract = self.approved_contract()
        self.send(contract)
        tenant = self.record(contract, 'tenant')

        self.orchestrator.reject_signature(tenant, 'Rent is wrong')

        tenant.refresh_from_db()
        self.assertEqual(tenant.status, SignatureStatus.REJECTED)
        self.assertTrue(tenant.audit_logs.filter(event='rejected', message='Rent is wrong').exists())
        with self.assertRaises(TransitionError):
            self.orchestrator.complete_signature(tenant)


class SimulatedTimelineTests(SignatureOrchestratorTestCase):
    def test_poll_after_twenty_minutes_signs_everyone(self):
        contract = self.approved_contract()
        self.send(contract)

        self.clock.advance(minutes=25)
        result = self.orchestrator.refresh_contract(contract)

        self.assertEqual(result.status, ContractStatus.FULLY_SIGNED)
        self.assertEqual(sorted(result.changed), ['owner', 'tenant'])
        owner = self.record(contract, 'owner')
        created = SimulatedSignatureProvider.created_at(owner.external_request_id)
        self.assertEqual(owner.signed_at, created + timedelta(minutes=20))
        self.assertTrue(owner.certificate_url.endswith('.pdf'))

    def test_early_poll_does_not_regress_sent_record(self):
        contract = self.approved_contract()
        self.send(contract)

        # Under two minutes the simulated provider still reports pending.
        self.orchestrator.refresh_contract(contract)

        self.assertEqual(self.record(contract, 'owner').status, SignatureStatus.SENT)

    def test_poll_after_thirty_minutes_expires(self):
        contract = self.approved_contract()
        self.send(contract)

        self.clock.advance(minutes=31)
        self.orchestrator.refresh_contract(contract)

        self.assertEqual(self.record(contract, 'owner').status, SignatureStatus.EXPIRED)
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.SENT_TO_SIGNATURE)

    def test_expire_overdue(self):
        contract = self.approved_contract()
        self.send(contract)

        expired = self.orchestrator.expire_overdue(contract, now=self.clock.advance(minutes=31))

        self.assertEqual(sorted(expired), ['owner', 'tenant'])
        self.assertEqual(self.orchestrator.expire_overdue(contract, now=self.clock.now), [])

    def test_signing_after_expiry_requires_new_request(self):
        contract = self.approved_contract()
        self.send(contract)
        owner = self.record(contract, 'owner')

        with self.assertRaises(ExpiryError):
            self.orchestrator.complete_signature(owner, now=owner.expires_at + timedelta(seconds=1))

        owner.refresh_from_db()
        self.assertEqual(owner.status, SignatureStatus.EXPIRED)
        self.assertIsNone(owner.signed_at)

    def test_retry_expired_record_creates_fresh_request(self):
        contract = self.approved_contract()
        self.send(contract)
        owner = self.record(contract, 'owner')
        old_id = owner.external_request_id
        self.orchestrator.expire_overdue(contract, now=self.clock.advance(minutes=31))

        self.orchestrator.retry_dispatch(self.record(contract, 'owner'))

        owner.refresh_from_db()
        self.assertEqual(owner.status, SignatureStatus.SENT)
        self.assertNotEqual(owner.external_request_id, old_id)
        self.orchestrator.complete_signature(owner, now=self.clock.now)
        self.assertEqual(self.record(contract, 'owner').status, SignatureStatus.SIGNED)

    def test_retry_refuses_sent_record(self):
        contract = self.approved_contract()
        self.send(contract)

        with self.assertRaises(TransitionError):
            self.orchestrator.retry_dispatch(self.record(contract, 'owner'))


class RefreshFailureTests(SignatureOrchestratorTestCase):
    def test_provider_error_only_touches_audit_metadata(self):
        contract = self.approved_contract()
        self.send(contract)
        orchestrator = SignatureOrchestrator(UnreachableStatusProvider(clock=self.clock), document_builder=fake_document)
        owner = self.record(contract, 'owner')

        with self.assertRaises(ProviderError):
            orchestrator.refresh_record(owner)

        owner.refresh_from_db()
        self.assertEqual(owner.status, SignatureStatus.SENT)
        self.assertEqual(owner.last_error, 'status endpoint timed out')
        self.assertIsNotNone(owner.last_status_check_at)

    def test_repeated_callback_keeps_poll_error(self):
        contract = self.approved_contract()
        self.send(contract)
        orchestrator = SignatureOrchestrator(UnreachableStatusProvider(clock=self.clock), document_builder=fake_document)
        owner = self.record(contract, 'owner')
        with self.assertRaises(ProviderError):
            orchestrator.refresh_record(owner)

        self.orchestrator.handle_provider_callback(owner.external_request_id, 'sent')
        owner.refresh_from_db()
        self.assertEqual(owner.last_error, 'status endpoint timed out')

        self.orchestrator.handle_provider_callback(owner.external_request_id, 'delivered')
        owner.refresh_from_db()
        self.assertEqual(owner.status, SignatureStatus.VIEWED)
        self.assertIsNone(owner.last_error)

    def test_contract_refresh_collects_errors(self):
        contract = self.approved_contract()
        self.send(contract)
        orchestrator = SignatureOrchestrator(UnreachableStatusProvider(clock=self.clock), document_builder=fake_document)

        result = orchestrator.refresh_contract(contract)

        self.assertEqual(set(result.errors), {'owner', 'tenant'})
        self.assertEqual(result.status, ContractStatus.SENT_TO_SIGNATURE)


class CancelTests(SignatureOrchestratorTestCase):
    def test_cancel_voids_outstanding_requests(self):
        contract = self.approved_contract()
        self.send(contract)
        self.orchestrator.complete_signature(self.record(contract, 'owner'))

        self.orchestrator.cancel_contract(contract, 'Tenant withdrew')

        self.assertEqual(contract.status, ContractStatus.CANCELLED)
        self.assertEqual(self.record(contract, 'owner').status, SignatureStatus.SIGNED)
        tenant = self.record(contract, 'tenant')
        self.assertEqual(tenant.status, SignatureStatus.CANCELLED)
        self.assertEqual(self.provider.cancelled, [tenant.external_request_id])
        self.assertTrue(SigningAuditLog.objects.filter(signature_record=tenant, event='cancelled').exists())

    def test_cancelled_contract_ignores_callbacks(self):
        contract = self.approved_contract()
        self.send(contract)
        self.orchestrator.cancel_contract(contract)
        tenant = self.record(contract, 'tenant')

        self.orchestrator.handle_provider_callback(tenant.external_request_id, 'completed')

        self.assertEqual(self.record(contract, 'tenant').status, SignatureStatus.CANCELLED)
        self.assertEqual(Contract.objects.get(id=contract.id).status, ContractStatus.CANCELLED)

    def test_fully_signed_contract_cannot_be_cancelled(self):
        contract = self.approved_contract()
        self.send(contract)
        for role in ('owner', 'tenant'):
            self.orchestrator.complete_signature(self.record(contract, role))

        with self.assertRaises(TransitionError):
            self.orchestrator.cancel_contract(contract)
