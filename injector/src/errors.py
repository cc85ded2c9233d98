from __future__ import annotations

from typing import Any


class InjectorError(Exception):
    """Base class for failures that deny a single admission request.

    ``partial`` carries whatever state the failing step had accumulated
    (an annotation map or a JSON document) so callers can inspect how far
    processing got. It is never applied to the cluster.
    """

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.partial = partial


class DecodeError(InjectorError):
    """Raised when the AdmissionReview payload or its object is malformed."""


class ValidationError(InjectorError):
    """Raised when a workload lacks something the mesh needs (label, domain, ID)."""


class UpstreamError(InjectorError):
    """Raised when the gateway, the CA or the certificate store fails."""


class ProcessorError(InjectorError):
    """Raised by the annotation processor; ``partial`` is the document so far."""


class UnsupportedValue(ProcessorError):
    pass


class ParseError(ProcessorError):
    pass


class ConfigError(RuntimeError):
    """Raised at startup when the injector configuration is invalid."""
