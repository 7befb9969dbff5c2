"""Request Scanner: applies the Pattern Registry to every string in a request.

Provides:
  - ``ScanFinding`` / ``ScanVerdict``: frozen result types.
  - ``scan_value()``:   one string against a set of categories.
  - ``scan_path()``:    URL path, pathTraversal + suspiciousFiles only.
  - ``scan_query()``:   every query value, all categories.
  - ``scan_body()``:    every string inside a JSON-like body, all categories.
  - ``scan_headers()``: selected request headers, sqlInjection + xss only.

INVARIANTS:
  - Synchronous, no I/O. Pure: the same input always yields the same findings,
    and nothing here mutates shared state.
  - NEVER raises on odd input. Non-string scalars are skipped.
  - A rule whose matcher raises is logged and counted as "no match"; the
    remaining rules of the category are still evaluated.
  - At most one finding per (location, category); the first matching rule
    of the category is recorded.
  - ``ScanFinding.value`` never exceeds MAX_FINDING_VALUE_CHARS characters.
  - A body nested deeper than ``max_depth`` yields one ``bodyNesting``
    finding, so it is blocked rather than passed on unscanned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import unquote

from emrgate.constants import (
    DEFAULT_MAX_BODY_DEPTH,
    MAX_FINDING_VALUE_CHARS,
    SCANNED_HEADERS,
    URL_DECODE_ROUNDS,
)
from emrgate.utils.logger import get_logger
from emrgate.waf.patterns import (
    ALL_CATEGORIES,
    HEADER_CATEGORIES,
    PATH_CATEGORIES,
    PATTERN_REGISTRY,
    Rule,
)

logger = get_logger(__name__)

QueryParams = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]

# Tag of the finding raised for over-deep bodies. Not a pattern category.
BODY_NESTING_CATEGORY = "bodyNesting"
BODY_NESTING_RULE = "max-depth-exceeded"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScanFinding:
    """A single pattern match recorded during a scan.

    Fields:
        category: Category tag of the matching rule set (e.g. ``"xss"``).
        location: ``path``, ``query:<key>``, ``header:<name>`` or ``body:<dotted.path>``.
        value:    Offending value, truncated to MAX_FINDING_VALUE_CHARS.
        rule:     Slug of the first rule in the category that matched.
    """

    category: str
    location: str
    value: str
    rule: str

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category,
            "location": self.location,
            "value": self.value,
            "rule": self.rule,
        }


@dataclass(frozen=True)
class ScanVerdict:
    """Aggregate decision for one request. Empty findings ⇒ allow."""

    findings: tuple[ScanFinding, ...] = field(default_factory=tuple)

    @property
    def blocked(self) -> bool:
        return len(self.findings) > 0

    @property
    def allowed(self) -> bool:
        return not self.findings

    @property
    def categories(self) -> frozenset[str]:
        return frozenset(f.category for f in self.findings)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def truncate_value(value: str, limit: int = MAX_FINDING_VALUE_CHARS) -> str:
    """Cut ``value`` to ``limit`` characters for audit-safe storage."""
    return value[:limit]


def decode_variants(value: str, rounds: int = URL_DECODE_ROUNDS) -> list[str]:
    """Return ``value`` plus each distinct percent-decoded form of it.

    Double and triple encoded payloads (``%2527`` → ``%27`` → ``'``) are
    unwrapped one round at a time. Decoding stops as soon as a round leaves
    the string unchanged.
    """
    variants = [value]
    current = value
    for _ in range(rounds):
        decoded = unquote(current)
        if decoded == current:
            break
        variants.append(decoded)
        current = decoded
    return variants


def _first_match(rules: Sequence[Rule], variants: Sequence[str]) -> Optional[Rule]:
    for rule in rules:
        for text in variants:
            try:
                if rule.matches(text):
                    return rule
            except Exception as exc:  # noqa: BLE001
                # One broken matcher must not disable the gate.
                logger.error(
                    "waf_rule_error",
                    rule=rule.slug,
                    category=rule.category,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                break
    return None


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------


def scan_value(
    value: str,
    location: str,
    categories: Sequence[str] = ALL_CATEGORIES,
) -> list[ScanFinding]:
    """Test one string against ``categories``.

    Args:
        value:      String to test. Non-strings and empty strings yield no findings.
        location:   Location descriptor copied into each finding.
        categories: Category tags to evaluate, in reporting order.

    Returns:
        One ScanFinding per matching category.
    """
    if not isinstance(value, str) or not value:
        return []

    variants = decode_variants(value)
    findings: list[ScanFinding] = []
    for category in categories:
        rule = _first_match(PATTERN_REGISTRY[category], variants)
        if rule is not None:
            findings.append(
                ScanFinding(
                    category=category,
                    location=location,
                    value=truncate_value(value),
                    rule=rule.slug,
                )
            )
    return findings


def scan_path(path: str) -> list[ScanFinding]:
    """Scan the URL path for traversal sequences and executable extensions."""
    return scan_value(path, "path", PATH_CATEGORIES)


def scan_query(params: QueryParams) -> list[ScanFinding]:
    """Scan every string-valued query parameter against all categories.

    Accepts a mapping or a sequence of ``(key, value)`` pairs, so repeated
    keys (``?id=1&id=2``) are all inspected. List values in a mapping are
    expanded.
    """
    items: Iterable[tuple[str, Any]]
    if isinstance(params, Mapping):
        items = params.items()
    else:
        items = params

    findings: list[ScanFinding] = []
    for key, value in items:
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if isinstance(item, str):
                findings.extend(scan_value(item, f"query:{key}"))
    return findings


def body_nesting_finding(location: str = "body:") -> ScanFinding:
    return ScanFinding(
        category=BODY_NESTING_CATEGORY,
        location=location,
        value="",
        rule=BODY_NESTING_RULE,
    )


def scan_body(
    value: Any,
    path_prefix: str = "",
    max_depth: int = DEFAULT_MAX_BODY_DEPTH,
) -> list[ScanFinding]:
    """Scan every string inside a JSON-like value against all categories.

    Walks scalars, sequences and mappings with an explicit work-list, so
    attacker-controlled nesting cannot exhaust the interpreter stack.
    A container nested deeper than ``max_depth`` is not descended; the first
    one found is reported as a ``bodyNesting`` finding at its location, so
    the request is blocked instead of passing through partly unscanned.

    Location descriptors use dotted paths for mapping keys and ``[i]`` for
    sequence indices: ``body:patient.contacts[0].phone``. A bare string body
    is reported as ``body:<path_prefix>`` (``body:`` when no prefix).

    Args:
        value:       Parsed body (dict, list, str, number, bool or None).
        path_prefix: Dotted path of ``value`` within the request body.
        max_depth:   Maximum container nesting to descend into.

    Returns:
        Findings in depth-first document order.
    """
    findings: list[ScanFinding] = []
    # (value, dotted path, depth); reversed pushes keep document order.
    stack: list[tuple[Any, str, int]] = [(value, path_prefix, 0)]
    overrun_at: Optional[str] = None

    while stack:
        current, path, depth = stack.pop()

        if isinstance(current, str):
            findings.extend(scan_value(current, f"body:{path}"))
            continue

        if isinstance(current, Mapping):
            if depth >= max_depth:
                overrun_at = path if overrun_at is None else overrun_at
                continue
            children = [
                (child, f"{path}.{key}" if path else str(key), depth + 1)
                for key, child in current.items()
            ]
            stack.extend(reversed(children))
            continue

        if isinstance(current, (list, tuple)):
            if depth >= max_depth:
                overrun_at = path if overrun_at is None else overrun_at
                continue
            children = [
                (child, f"{path}[{index}]", depth + 1)
                for index, child in enumerate(current)
            ]
            stack.extend(reversed(children))
            continue

        # Numbers, booleans, None: nothing to match.

    if overrun_at is not None:
        logger.warning("waf_body_depth_exceeded", max_depth=max_depth, location=f"body:{overrun_at}")
        findings.append(body_nesting_finding(f"body:{overrun_at}"))

    return findings


def scan_headers(
    headers: Mapping[str, str],
    names: Sequence[str] = SCANNED_HEADERS,
) -> list[ScanFinding]:
    """Scan selected request headers for SQL injection and XSS.

    Header names are matched case-insensitively. Only headers a client can
    set freely are inspected (``user-agent``, ``referer`` and the forwarding
    headers by default).
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}
    findings: list[ScanFinding] = []
    for name in names:
        value = lowered.get(name)
        if isinstance(value, str):
            findings.extend(scan_value(value, f"header:{name}", HEADER_CATEGORIES))
    return findings
