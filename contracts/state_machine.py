"""
Contract lifecycle state machine.

Transitions:

    draft -> approved -> sent_to_signature -> partially_signed -> fully_signed
    any non-terminal state -> cancelled

Every write is a compare-and-set on the persisted status, so a stale
in-memory contract can never overwrite a concurrently advanced one.
"""
import logging
from typing import Iterable, Optional

from django.db import transaction
from django.utils import timezone

from lease_backend.metrics import CONTRACT_TRANSITIONS

from .errors import TransitionError
from .models import Contract, ContractStatus, SignatureStatus

logger = logging.getLogger(__name__)


# Whether each signature status counts as signed. Must classify every member.
_COUNTS_AS_SIGNED = {
    SignatureStatus.PENDING: False,
    SignatureStatus.SENT: False,
    SignatureStatus.VIEWED: False,
    SignatureStatus.SIGNED: True,
    SignatureStatus.REJECTED: False,
    SignatureStatus.EXPIRED: False,
    SignatureStatus.CANCELLED: False,
}
if set(_COUNTS_AS_SIGNED) != set(SignatureStatus):
    raise RuntimeError('Every SignatureStatus member must be classified as signed or not signed')

SIGNING_STATES = (
    ContractStatus.SENT_TO_SIGNATURE,
    ContractStatus.PARTIALLY_SIGNED,
    ContractStatus.FULLY_SIGNED,
)

TERMINAL_STATES = (ContractStatus.FULLY_SIGNED, ContractStatus.CANCELLED)

# Forward order of the non-cancelled states.
_RANK = {
    ContractStatus.DRAFT: 0,
    ContractStatus.APPROVED: 1,
    ContractStatus.SENT_TO_SIGNATURE: 2,
    ContractStatus.PARTIALLY_SIGNED: 3,
    ContractStatus.FULLY_SIGNED: 4,
}


def aggregate_contract_status(statuses: Iterable) -> ContractStatus:
    """Map a multiset of signature statuses to the contract's signing status.

    k = 0 signed -> sent_to_signature, 0 < k < n -> partially_signed,
    k = n -> fully_signed. An empty set counts as nothing signed.
    """
    total = 0
    signed = 0
    for raw in statuses:
        status = SignatureStatus(raw)
        total += 1
        if _COUNTS_AS_SIGNED[status]:
            signed += 1

    if signed == 0:
        return ContractStatus.SENT_TO_SIGNATURE
    if signed < total:
        return ContractStatus.PARTIALLY_SIGNED
    return ContractStatus.FULLY_SIGNED


class ContractStateMachine:
    """Sole writer of `Contract.status`."""

    def _compare_and_set(self, contract: Contract, expected, target: ContractStatus, **fields) -> Contract:
        expected = tuple(ContractStatus(s) for s in expected)
        updated = Contract.objects.filter(id=contract.id, status__in=expected).update(
            status=target,
            updated_at=timezone.now(),
            **fields,
        )
        if updated != 1:
            persisted = Contract.objects.filter(id=contract.id).values_list('status', flat=True).first()
            logger.warning(
                "Rejected transition of contract %s to %s: expected %s, persisted %s",
                contract.id,
                target,
                [s.value for s in expected],
                persisted,
            )
            raise TransitionError(
                f'Cannot move contract {contract.id} to {target.value}: status is {persisted}',
                expected=[s.value for s in expected],
                actual=persisted,
            )

        previous = contract.status
        contract.refresh_from_db()
        CONTRACT_TRANSITIONS.labels(from_status=str(previous), to_status=target.value).inc()
        logger.info(f"Contract {contract.id} moved {previous} -> {target.value}")
        return contract

    def approve(self, contract: Contract, approved_by: Optional[str] = None) -> Contract:
        return self._compare_and_set(
            contract,
            [ContractStatus.DRAFT],
            ContractStatus.APPROVED,
            approved_at=timezone.now(),
            approved_by=str(approved_by or ''),
        )

    def send_to_signature(self, contract: Contract, parties, dispatcher):
        """Dispatch signing requests, then enter sent_to_signature.

        `dispatcher.dispatch` raises DispatchError when no signer was
        reached; the contract then stays approved.
        """
        persisted = Contract.objects.filter(id=contract.id).values_list('status', flat=True).first()
        if persisted != ContractStatus.APPROVED:
            raise TransitionError(
                f'Contract {contract.id} must be approved before it is sent to signature',
                expected=[ContractStatus.APPROVED.value],
                actual=persisted,
            )

        result = dispatcher.dispatch(contract, parties)
        self._compare_and_set(
            contract,
            [ContractStatus.APPROVED],
            ContractStatus.SENT_TO_SIGNATURE,
            sent_to_signature_at=timezone.now(),
        )
        return result

    def apply_recompute(self, contract: Contract, records) -> bool:
        """Apply the aggregate of `records`; returns True when the status changed."""
        target = aggregate_contract_status(r.status for r in records)

        with transaction.atomic():
            persisted = (
                Contract.objects.select_for_update()
                .filter(id=contract.id)
                .values_list('status', flat=True)
                .first()
            )
            if persisted not in SIGNING_STATES:
                raise TransitionError(
                    f'Contract {contract.id} is not in a signing state',
                    expected=[s.value for s in SIGNING_STATES],
                    actual=persisted,
                )

            current = ContractStatus(persisted)
            if current == target:
                if contract.status != persisted:
                    contract.refresh_from_db()
                return False
            if _RANK[target] < _RANK[current]:
                raise TransitionError(
                    f'Refusing to move contract {contract.id} back from {current.value} to {target.value}',
                    expected=[target.value],
                    actual=current.value,
                )

            extra = {}
            if target == ContractStatus.FULLY_SIGNED:
                extra['fully_signed_at'] = timezone.now()
            self._compare_and_set(contract, [current], target, **extra)
        return True

    def cancel(self, contract: Contract, reason: str = '') -> Contract:
        allowed = [s for s in ContractStatus if s not in TERMINAL_STATES]
        if reason:
            logger.info("Cancelling contract %s: %s", contract.id, reason)
        return self._compare_and_set(
            contract,
            allowed,
            ContractStatus.CANCELLED,
            cancelled_at=timezone.now(),
        )
