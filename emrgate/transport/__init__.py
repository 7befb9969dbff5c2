"""HTTPS enforcement for EMRGate."""

from emrgate.transport.middleware import TransportGuardMiddleware, is_secure_request

__all__ = ["TransportGuardMiddleware", "is_secure_request"]
