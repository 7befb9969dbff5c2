"""EMRGate Web Application Firewall.

    patterns.py  : Pattern Registry (google-re2 rules per category)
    scanner.py   : Request Scanner (path / query / body / header scans)
    gate.py      : inspect_request(): the pure allow/block decision
    middleware.py: WAFMiddleware: Starlette adapter, 403 + audit
"""

from emrgate.waf.gate import inspect_request
from emrgate.waf.patterns import PATTERN_REGISTRY, Category, Rule
from emrgate.waf.scanner import ScanFinding, ScanVerdict

__all__ = [
    "Category",
    "PATTERN_REGISTRY",
    "Rule",
    "ScanFinding",
    "ScanVerdict",
    "inspect_request",
]
