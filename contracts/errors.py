"""
Error taxonomy for the approval / e-signature lifecycle and PDF export.

Every error carries a short machine `code` and a `details` dict so the REST
layer can surface a structured failure without parsing messages.
"""
from typing import Any, Dict, Optional


class SignatureWorkflowError(RuntimeError):
    code = 'signature_workflow_error'

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {'error': str(self), 'code': self.code, 'details': self.details}


class ValidationError(SignatureWorkflowError):
    """A signer is missing a required name or email."""

    code = 'validation_error'


class TransitionError(SignatureWorkflowError):
    """An illegal state change was attempted; nothing was written."""

    code = 'transition_error'

    def __init__(self, message: str, *, expected=None, actual=None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if expected is not None:
            details['expected'] = [str(s) for s in expected] if isinstance(expected, (list, tuple, set, frozenset)) else str(expected)
        if actual is not None:
            details['actual'] = str(actual)
        super().__init__(message, details=details)
        self.expected = expected
        self.actual = actual


class DispatchError(SignatureWorkflowError):
    """No signer could be reached; the contract stays approved."""

    code = 'dispatch_error'

    def __init__(self, message: str, *, failures: Optional[Dict[str, str]] = None):
        super().__init__(message, details={'failures': dict(failures or {})})
        self.failures = dict(failures or {})


class ProviderError(SignatureWorkflowError):
    """Network failure, timeout or non-2xx answer from the signature provider."""

    code = 'provider_error'

    def __init__(self, message: str, *, status_code: Optional[int] = None, response_text: Optional[str] = None):
        super().__init__(message, details={'status_code': status_code, 'response_text': response_text})
        self.status_code = status_code
        self.response_text = response_text


class RenderError(SignatureWorkflowError):
    """Rasterization failed; no artifact is produced."""

    code = 'render_error'


class ExpiryError(SignatureWorkflowError):
    """A signer tried to complete after the request expired; a fresh dispatch is required."""

    code = 'expiry_error'


class ExportCancelled(SignatureWorkflowError):
    """The export job was cancelled while pages were being assembled."""

    code = 'export_cancelled'
