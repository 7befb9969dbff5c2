"""ReDoS gate for the WAF rule set.

Every rule must be a compiled google-re2 pattern. RE2 matches in linear
time, so attacker-controlled query strings and JSON bodies cannot stall the
event loop through backtracking. A rule that RE2 rejects fails at import,
and a stdlib ``re`` import in the WAF package fails here.
"""

from __future__ import annotations

import pathlib
import time

import pytest
import re2

from emrgate.waf.patterns import ALL_CATEGORIES, PATTERN_REGISTRY, Rule

_Re2Type = type(re2.compile(r"x"))

ALL_RULES: list[Rule] = [rule for category in ALL_CATEGORIES for rule in PATTERN_REGISTRY[category]]

WAF_PACKAGE = pathlib.Path(__file__).resolve().parents[2] / "emrgate" / "waf"

# Inputs that blow up backtracking engines on naive alternation/repetition.
ADVERSARIAL_INPUTS = [
    "' OR " * 5000,
    "union " * 5000 + "x",
    "<" * 20000,
    "../" * 10000 + "x",
    "a" * 50000 + "!",
    "; " * 10000,
]


@pytest.mark.parametrize("rule", ALL_RULES, ids=[f"{r.category}::{r.slug}" for r in ALL_RULES])
def test_rule_is_re2(rule: Rule) -> None:
    assert isinstance(rule.pattern, _Re2Type), f"{rule.slug} is {type(rule.pattern)}"
    rule.matches("plain clinical note text")


def test_no_stdlib_re_in_waf_package() -> None:
    offenders = []
    for source in WAF_PACKAGE.glob("*.py"):
        for number, line in enumerate(source.read_text().splitlines(), start=1):
            stripped = line.strip()
            if stripped in ("import re", "from re import *") or stripped.startswith(("import re ", "from re import")):
                offenders.append(f"{source.name}:{number}: {stripped}")
    assert not offenders, "\n".join(offenders)


@pytest.mark.parametrize("payload", ADVERSARIAL_INPUTS, ids=lambda p: p[:12])
def test_adversarial_input_scans_quickly(payload: str) -> None:
    started = time.perf_counter()
    for rule in ALL_RULES:
        rule.matches(payload)
    assert time.perf_counter() - started < 5.0
