"""
Shared fixtures for contracts tests
"""
from datetime import timedelta

from django.utils import timezone

from contracts.errors import ProviderError
from contracts.models import Contract, ContractStatus
from contracts.signature_providers import SimulatedSignatureProvider

SECTIONS = [
    {
        'id': 'parties',
        'title': 'Parties',
        'body': '<p>This lease is made between the <strong>owner</strong> and the tenant named below.</p>',
        'editable': False,
    },
    {
        'id': 'rent',
        'title': 'Rent and Deposit',
        'body': 'Monthly rent is 950 EUR payable on the first day of each month.<br>Deposit: one month of rent.',
        'editable': True,
    },
    {
        'id': 'term',
        'title': 'Term',
        'body': 'The lease runs for twelve months and renews tacitly unless terminated with three months notice.',
        'editable': True,
    },
]

PARTIES = {
    'owner': {'name': 'Olivia Owner', 'email': 'owner@example.com'},
    'tenant': {'name': 'Tom Tenant', 'email': 'tenant@example.com'},
}

PARTIES_WITH_GUARANTOR = {
    **PARTIES,
    'guarantor': {'name': 'Grace Guarantor', 'email': 'guarantor@example.com'},
}


def make_contract(status=ContractStatus.DRAFT, parties=None, sections=None, **kwargs):
    return Contract.objects.create(
        title=kwargs.pop('title', 'Lease - 12 Rue Exemple'),
        status=status,
        content={'sections': SECTIONS if sections is None else sections},
        parties=PARTIES if parties is None else parties,
        **kwargs,
    )


def fake_document(contract):
    return b'%PDF-1.4 test document'


class FakeClock:
    def __init__(self, now=None):
        self.now = now or timezone.now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FlakyProvider(SimulatedSignatureProvider):
    """Simulated provider whose send fails for selected roles."""

    def __init__(self, failing_roles=(), **kwargs):
        super().__init__(**kwargs)
        self.failing_roles = set(failing_roles)
        self.cancelled = []

    def send(self, request):
        if request.signer_type in self.failing_roles:
            raise ProviderError('vendor unavailable', status_code=503)
        return super().send(request)

    def cancel(self, external_request_id, reason=''):
        self.cancelled.append(external_request_id)
        return super().cancel(external_request_id, reason)


class UnreachableStatusProvider(SimulatedSignatureProvider):
    def check_status(self, external_request_id):
        raise ProviderError('status endpoint timed out')
