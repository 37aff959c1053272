"""
Management command to poll the signature provider for open contracts
"""
from django.core.management.base import BaseCommand, CommandError

from contracts.errors import SignatureWorkflowError
from contracts.models import Contract
from contracts.signature_orchestrator import SignatureOrchestrator
from contracts.signature_providers import get_signature_provider
from contracts.state_machine import SIGNING_STATES


class Command(BaseCommand):
    help = 'Expire overdue signing requests and refresh signature status from the provider'

    def add_arguments(self, parser):
        parser.add_argument('contract_ids', nargs='*', help='Contract UUIDs (default: every contract awaiting signatures)')

    def handle(self, *args, **options):
        ids = options['contract_ids']
        if ids:
            contracts = list(Contract.objects.filter(id__in=ids))
            missing = set(ids) - {str(c.id) for c in contracts}
            if missing:
                raise CommandError(f"Unknown contract id(s): {', '.join(sorted(missing))}")
        else:
            contracts = list(Contract.objects.filter(status__in=SIGNING_STATES[:2]))

        orchestrator = SignatureOrchestrator(get_signature_provider())
        failures = 0
        for contract in contracts:
            try:
                expired = orchestrator.expire_overdue(contract)
                result = orchestrator.refresh_contract(contract)
            except SignatureWorkflowError as e:
                failures += 1
                self.stderr.write(self.style.ERROR(f"{contract.id}: {e}"))
                continue

            line = f"{contract.id}: {result.status}"
            if result.changed:
                line += f" (updated: {', '.join(result.changed)})"
            if expired:
                line += f" (expired: {', '.join(expired)})"
            self.stdout.write(self.style.SUCCESS(line))
            for role, error in result.errors.items():
                self.stderr.write(self.style.WARNING(f"  {role}: {error}"))

        self.stdout.write(f"Refreshed {len(contracts) - failures} contract(s)")
