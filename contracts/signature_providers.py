import base64
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Callable, Dict, Optional

import requests
from django.conf import settings

from .errors import ProviderError
from .models import SignatureStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureRequest:
    contract_id: str
    signer_type: str
    signer_name: str
    signer_email: str
    document_bytes: bytes = b''
    document_name: str = 'contract.pdf'
    callback_url: Optional[str] = None


@dataclass(frozen=True)
class SignatureResponse:
    success: bool
    external_request_id: Optional[str] = None
    signature_url: Optional[str] = None
    error: Optional[str] = None
    # Provider-side creation time of the request, when known.
    requested_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class SignatureStatusResult:
    external_request_id: str
    status: SignatureStatus
    signed_at: Optional[datetime] = None
    certificate_url: Optional[str] = None
    raw_status: Optional[str] = None


class SignatureProvider(ABC):
    """Boundary to an electronic-signature backend."""

    name = 'abstract'

    @abstractmethod
    def send(self, request: SignatureRequest) -> SignatureResponse:
        ...

    @abstractmethod
    def check_status(self, external_request_id: str) -> SignatureStatusResult:
        ...

    @abstractmethod
    def cancel(self, external_request_id: str, reason: str = '') -> bool:
        ...


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class SimulatedSignatureProvider(SignatureProvider):
    """Deterministic provider for environments without a live vendor.

    The request creation time is encoded in the external id
    (`sim_<contract>_<role>_<epoch_ms>`), so status is a pure function of the
    time elapsed since then:

        < 2 min  pending
        < 10 min sent
        < 20 min viewed
        < 30 min signed (signed_at = creation + 20 min)
        after    expired
    """

    name = 'simulated'

    PENDING_UNTIL = timedelta(minutes=2)
    SENT_UNTIL = timedelta(minutes=10)
    VIEWED_UNTIL = timedelta(minutes=20)
    SIGNED_UNTIL = timedelta(minutes=30)

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, base_url: Optional[str] = None):
        self.clock = clock or _utcnow
        self.base_url = (base_url or os.getenv('ESIGN_SIMULATED_BASE_URL') or 'http://localhost:8000').rstrip('/')

    def send(self, request: SignatureRequest) -> SignatureResponse:
        created = self.clock()
        epoch_ms = int(created.timestamp() * 1000)
        external_id = f"sim_{request.contract_id}_{request.signer_type}_{epoch_ms}"
        logger.info(
            "Simulated signature request %s for %s <%s>",
            external_id,
            request.signer_name,
            request.signer_email,
        )
        return SignatureResponse(
            success=True,
            external_request_id=external_id,
            signature_url=f"{self.base_url}/signature/{external_id}",
            requested_at=self.created_at(external_id),
            expires_at=self.created_at(external_id) + self.SIGNED_UNTIL,
        )

    @staticmethod
    def created_at(external_request_id: str) -> datetime:
        try:
            epoch_ms = int(str(external_request_id).rsplit('_', 1)[-1])
        except (TypeError, ValueError) as e:
            raise ProviderError(f'Not a simulated request id: {external_request_id}') from e
        return datetime.fromtimestamp(epoch_ms / 1000.0, tz=dt_timezone.utc)

    @classmethod
    def status_for_elapsed(cls, elapsed: timedelta) -> SignatureStatus:
        if elapsed < cls.PENDING_UNTIL:
            return SignatureStatus.PENDING
        if elapsed < cls.SENT_UNTIL:
            return SignatureStatus.SENT
        if elapsed < cls.VIEWED_UNTIL:
            return SignatureStatus.VIEWED
        if elapsed < cls.SIGNED_UNTIL:
            return SignatureStatus.SIGNED
        return SignatureStatus.EXPIRED

    def check_status(self, external_request_id: str) -> SignatureStatusResult:
        created = self.created_at(external_request_id)
        status = self.status_for_elapsed(self.clock() - created)
        signed = status == SignatureStatus.SIGNED
        return SignatureStatusResult(
            external_request_id=external_request_id,
            status=status,
            signed_at=created + self.VIEWED_UNTIL if signed else None,
            certificate_url=f"/certificates/{external_request_id}.pdf" if signed else None,
            raw_status=status.value,
        )

    def cancel(self, external_request_id: str, reason: str = '') -> bool:
        logger.info("Simulated cancel of %s (%s)", external_request_id, reason or 'no reason')
        return True


# Vendor envelope status -> internal status. Every vendor status the API can
# return is listed; anything else is a provider error, never a guess.
VENDOR_STATUS_MAP: Dict[str, SignatureStatus] = {
    'created': SignatureStatus.PENDING,
    'sent': SignatureStatus.SENT,
    'delivered': SignatureStatus.VIEWED,
    'completed': SignatureStatus.SIGNED,
    'declined': SignatureStatus.REJECTED,
    'voided': SignatureStatus.CANCELLED,
    'expired': SignatureStatus.EXPIRED,
}


def map_vendor_status(raw_status) -> SignatureStatus:
    key = str(raw_status or '').strip().lower()
    try:
        return VENDOR_STATUS_MAP[key]
    except KeyError:
        raise ProviderError(f'Unknown vendor signature status: {raw_status!r}') from None


@dataclass(frozen=True)
class HttpProviderConfig:
    api_key: str
    base_url: str

    # Endpoint templates (override via env if needed)
    create_path: str
    status_path: str
    void_path: str

    auth_header_name: str
    auth_header_value_prefix: str

    timeout_seconds: int


def load_http_provider_config() -> HttpProviderConfig:
    api_key = (os.getenv('ESIGN_API_KEY') or '').strip()
    if not api_key:
        raise ProviderError('ESIGN_API_KEY is not configured')

    base_url = (os.getenv('ESIGN_BASE_URL') or '').strip().rstrip('/')
    if not base_url:
        raise ProviderError('ESIGN_BASE_URL is not configured')

    return HttpProviderConfig(
        api_key=api_key,
        base_url=base_url,
        create_path=(os.getenv('ESIGN_CREATE_PATH') or '/envelopes').strip(),
        status_path=(os.getenv('ESIGN_STATUS_PATH') or '/envelopes/{request_id}').strip(),
        void_path=(os.getenv('ESIGN_VOID_PATH') or '/envelopes/{request_id}').strip(),
        auth_header_name=(os.getenv('ESIGN_AUTH_HEADER') or 'Authorization').strip(),
        auth_header_value_prefix=(os.getenv('ESIGN_AUTH_PREFIX') or 'Bearer ').lstrip(),
        timeout_seconds=int(os.getenv('ESIGN_TIMEOUT_SECONDS') or '30'),
    )


class HttpSignatureProvider(SignatureProvider):
    """HTTP wrapper for an envelope-style e-sign API.

    Paths and the auth header are configurable through ESIGN_* env vars
    because vendor APIs differ; the defaults follow the common
    `/envelopes` layout.
    """

    name = 'http'

    def __init__(self, config: Optional[HttpProviderConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or load_http_provider_config()
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            self.config.auth_header_name: f"{self.config.auth_header_value_prefix}{self.config.api_key}",
            'Content-Type': 'application/json',
        }

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path if path.startswith('/') else '/' + path}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = dict(kwargs.pop('headers', {}) or {})
        headers.update(self._headers())

        logger.info(f"E-sign API request: {method} {url}")
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.config.timeout_seconds, **kwargs)
        except requests.RequestException as e:
            logger.error(f"E-sign API request failed: {method} {url} | Error: {e}", exc_info=True)
            raise ProviderError(f'E-sign API request failed: {e}') from e

        logger.info(f"E-sign API response: {method} {url} | Status: {resp.status_code}")

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error(f"E-sign API error response: {method} {url} | Status: {resp.status_code} | Body: {resp.text[:1000]}")
            raise ProviderError(
                f'E-sign API error ({resp.status_code})',
                status_code=resp.status_code,
                response_text=(resp.text or '')[:2000],
            )
        return resp

    def _json(self, resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError('E-sign API returned a non-JSON body', status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise ProviderError('E-sign API returned an unexpected payload', status_code=resp.status_code)
        return data

    def send(self, request: SignatureRequest) -> SignatureResponse:
        payload = {
            'emailSubject': 'Lease contract - electronic signature',
            'documents': [{
                'documentBase64': base64.b64encode(request.document_bytes or b'').decode('ascii'),
                'documentId': '1',
                'fileExtension': 'pdf',
                'name': request.document_name,
            }],
            'recipients': {
                'signers': [{
                    'email': request.signer_email,
                    'name': request.signer_name,
                    'recipientId': '1',
                    'routingOrder': '1',
                    'roleName': request.signer_type,
                }],
            },
            'eventNotification': {'url': request.callback_url} if request.callback_url else None,
            'status': 'sent',
        }

        resp = self._request('POST', self._url(self.config.create_path), json=payload)
        data = self._json(resp)

        envelope_id = str(data.get('envelopeId') or '').strip()
        if not envelope_id:
            raise ProviderError('E-sign API did not return an envelope id', status_code=resp.status_code)

        signing_url = str(data.get('envelopeUrl') or '').strip() or f"{self.config.base_url}/signing/{envelope_id}"
        now = _utcnow()
        logger.info("Signing request %s created for %s", envelope_id, request.signer_type)
        return SignatureResponse(
            success=True,
            external_request_id=envelope_id,
            signature_url=signing_url,
            requested_at=now,
            expires_at=now + timedelta(days=getattr(settings, 'ESIGN_EXPIRES_IN_DAYS', 30)),
        )

    def check_status(self, external_request_id: str) -> SignatureStatusResult:
        url = self._url(self.config.status_path.format(request_id=external_request_id))
        data = self._json(self._request('GET', url))

        raw_status = data.get('status')
        status = map_vendor_status(raw_status)

        signed_at = None
        completed = data.get('completedDateTime')
        if status == SignatureStatus.SIGNED and completed:
            try:
                signed_at = datetime.fromisoformat(str(completed).replace('Z', '+00:00'))
            except ValueError:
                logger.warning("Unparseable completedDateTime %r for %s", completed, external_request_id)

        return SignatureStatusResult(
            external_request_id=external_request_id,
            status=status,
            signed_at=signed_at,
            certificate_url=data.get('certificateUri'),
            raw_status=str(raw_status),
        )

    def cancel(self, external_request_id: str, reason: str = '') -> bool:
        url = self._url(self.config.void_path.format(request_id=external_request_id))
        self._request('PUT', url, json={'status': 'voided', 'voidedReason': reason or 'Cancelled by user'})
        return True


def get_signature_provider() -> SignatureProvider:
    """Build the provider selected by settings.ESIGN_PROVIDER."""
    kind = (getattr(settings, 'ESIGN_PROVIDER', 'simulated') or 'simulated').strip().lower()
    if kind == 'simulated':
        return SimulatedSignatureProvider()
    if kind == 'http':
        return HttpSignatureProvider()
    raise ProviderError(f'Unknown ESIGN_PROVIDER: {kind}')
