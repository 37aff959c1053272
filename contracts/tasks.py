import logging

from celery import shared_task
from django.core.files.base import ContentFile
from django.utils import timezone

from lease_backend.metrics import CONTRACT_EXPORTS

logger = logging.getLogger(__name__)


def _mark_failed(job_id, error: str) -> None:
    from .models import ContractExportJob

    ContractExportJob.objects.filter(id=job_id, status='processing').update(
        status='failed',
        error_message=error,
        updated_at=timezone.now(),
    )
    CONTRACT_EXPORTS.labels(status='failed').inc()


@shared_task(name='contracts.export_contract_pdf')
def export_contract_pdf(job_id: str):
    """
    Render a contract to a paginated PDF for an export job.

    Process:
    1. Claim the job (pending -> processing)
    2. Render sections to one raster, paginate, assemble the PDF
    3. Store the artifact unless the job was cancelled meanwhile

    A render error fails the job quietly; any other error fails the job
    and is re-raised.

    Args:
        job_id: ContractExportJob UUID
    """
    from .errors import ExportCancelled, RenderError
    from .models import ContractExportJob
    from .pagination import contract_pdf, export_filename

    claimed = ContractExportJob.objects.filter(id=job_id, status='pending').update(
        status='processing',
        updated_at=timezone.now(),
    )
    if not claimed:
        logger.info(f"Export job {job_id} is no longer pending; skipping")
        return None

    def cancelled() -> bool:
        return ContractExportJob.objects.filter(id=job_id, status='cancelled').exists()

    job = None
    try:
        job = ContractExportJob.objects.select_related('contract').get(id=job_id)
        pdf_bytes, layout = contract_pdf(
            job.contract,
            page_size=(job.page_width_mm, job.page_height_mm),
            scale_mode=job.scale_mode,
            should_cancel=cancelled,
        )

        if cancelled():
            CONTRACT_EXPORTS.labels(status='cancelled').inc()
            return None

        filename = export_filename(job.contract)
        job.artifact.save(filename, ContentFile(pdf_bytes), save=False)

        finished = ContractExportJob.objects.filter(id=job_id, status='processing').update(
            status='completed',
            artifact=job.artifact.name,
            filename=filename,
            page_count=layout.page_count,
            completed_at=timezone.now(),
            updated_at=timezone.now(),
        )
    except ExportCancelled:
        logger.info(f"Export job {job_id} cancelled during assembly")
        CONTRACT_EXPORTS.labels(status='cancelled').inc()
        return None
    except RenderError as e:
        logger.warning(f"Export job {job_id} failed to render: {e}")
        _mark_failed(job_id, str(e))
        return None
    except Exception as e:
        logger.error(f"Export job {job_id} failed: {e}", exc_info=True)
        if job is not None and job.artifact:
            job.artifact.delete(save=False)
        _mark_failed(job_id, str(e) or e.__class__.__name__)
        raise

    if not finished:
        # Cancelled between the last check and the write.
        job.artifact.delete(save=False)
        CONTRACT_EXPORTS.labels(status='cancelled').inc()
        return None

    CONTRACT_EXPORTS.labels(status='completed').inc()
    logger.info(f"Export job {job_id} completed: {filename} ({layout.page_count} pages)")
    return str(job_id)


@shared_task(name='contracts.refresh_open_signatures')
def refresh_open_signatures():
    """Poll the provider for every contract still collecting signatures."""
    from .models import Contract
    from .signature_orchestrator import SignatureOrchestrator
    from .signature_providers import get_signature_provider
    from .state_machine import SIGNING_STATES

    orchestrator = SignatureOrchestrator(get_signature_provider())
    refreshed = 0
    for contract in Contract.objects.filter(status__in=SIGNING_STATES[:2]):
        orchestrator.expire_overdue(contract)
        result = orchestrator.refresh_contract(contract)
        if result.errors:
            logger.warning(f"Signature refresh errors on contract {contract.id}: {result.errors}")
        refreshed += 1
    return refreshed
