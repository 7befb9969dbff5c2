"""Pattern Registry for the WAF: detection rules grouped by attack category.

All patterns are pre-compiled at module load time using google-re2.
NO pattern compilation happens per-request, per-call, or lazily.

RE2 guarantees linear-time matching, so an attacker-supplied value cannot
trigger catastrophic backtracking. RE2 has no lookaround or backreferences;
every rule below is written within that subset.

Case handling:
  - Every rule is case-insensitive (``(?i)`` prefix added at compile time)
    unless ``case_sensitive=True``.
  - Only literal traversal sequences (``../`` and ``..\\``) are marked
    case-sensitive: they contain no letters, so case folding is meaningless.

The registry is a read-only mapping (``MappingProxyType``) of tuples of
frozen ``Rule`` objects. Nothing mutates it after import.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

import re2  # google-re2: NOT stdlib re


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


class Category:
    """Category tags. Values are the stable strings written to audit records."""

    SQL_INJECTION = "sqlInjection"
    XSS = "xss"
    PATH_TRAVERSAL = "pathTraversal"
    COMMAND_INJECTION = "commandInjection"
    SUSPICIOUS_FILES = "suspiciousFiles"


#: Registry order: also the order findings are reported in for one value.
ALL_CATEGORIES: tuple[str, ...] = (
    Category.SQL_INJECTION,
    Category.XSS,
    Category.PATH_TRAVERSAL,
    Category.COMMAND_INJECTION,
    Category.SUSPICIOUS_FILES,
)

#: Categories applied to the URL path.
PATH_CATEGORIES: tuple[str, ...] = (Category.PATH_TRAVERSAL, Category.SUSPICIOUS_FILES)

#: Categories applied to inspected request headers.
HEADER_CATEGORIES: tuple[str, ...] = (Category.SQL_INJECTION, Category.XSS)


# ---------------------------------------------------------------------------
# Rule dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    """A single compiled detection rule.

    Fields:
        category:       One of the ``Category`` tags.
        slug:           Kebab-case rule name recorded in findings and audit events.
        pattern:        Pre-compiled re2 pattern object.
        case_sensitive: False for every rule except literal traversal sequences.
    """

    category: str
    slug: str
    pattern: Any  # re2._Regexp: pre-compiled at module load
    case_sensitive: bool = False

    def matches(self, text: str) -> bool:
        """Return True if the pattern occurs anywhere in ``text``."""
        return self.pattern.search(text) is not None


# Quote characters as an RE2 class. Built from plain strings so no escaped
# quote ever reaches the pattern source.
_QUOTE = "['\"]"
_NOT_QUOTE = "[^'\"]"


def _rule(category: str, slug: str, expr: str, case_sensitive: bool = False) -> Rule:
    source = expr if case_sensitive else "(?i)" + expr
    return Rule(
        category=category,
        slug=slug,
        pattern=re2.compile(source),
        case_sensitive=case_sensitive,
    )


# ===========================================================================
# SQL INJECTION
# Keywords only count in injection contexts. A lone "select" or "+" in free
# text (clinical notes, phone numbers) is not a finding.
# ===========================================================================

SQL_INJECTION_RULES: tuple[Rule, ...] = (
    _rule(Category.SQL_INJECTION, "union-select", r"\bunion\b(?:\s+all)?\s+select\b"),
    _rule(Category.SQL_INJECTION, "union-select-spread", r"\bunion\b.{0,100}\bselect\b.{0,100}\bfrom\b"),
    # ' OR 1=1   /   AND 2 = 2
    _rule(
        Category.SQL_INJECTION,
        "numeric-tautology",
        r"\b(?:or|and)\b\s*" + _QUOTE + r"?\s*\d+\s*" + _QUOTE + r"?\s*=\s*" + _QUOTE + r"?\s*\d+",
    ),
    # ' OR '1'='1   /   " or ""="
    _rule(
        Category.SQL_INJECTION,
        "quoted-tautology",
        _QUOTE + r"\s*(?:or|and)\s*" + _QUOTE + _NOT_QUOTE + "*" + _QUOTE + r"\s*=\s*" + _QUOTE,
    ),
    # admin'--   /   1' #   /   x' /*
    _rule(Category.SQL_INJECTION, "quote-comment", _QUOTE + r"\s*(?:--|#|/\*)"),
    _rule(Category.SQL_INJECTION, "trailing-comment", r"\b\d+\s*--\s*$"),
    _rule(Category.SQL_INJECTION, "inline-comment", r"/\*.*\*/"),
    # '; DROP TABLE patients
    _rule(
        Category.SQL_INJECTION,
        "stacked-query",
        r";\s*(?:select|insert|update|delete|drop|create|alter|truncate|exec|execute|shutdown|declare)\b",
    ),
    _rule(
        Category.SQL_INJECTION,
        "ddl-statement",
        r"\b(?:drop|truncate|alter)\s+(?:table|database|schema|user)\b",
    ),
    _rule(Category.SQL_INJECTION, "delete-from", r"\bdelete\s+from\b"),
    _rule(Category.SQL_INJECTION, "insert-into", r"\binsert\s+into\b.{0,200}\bvalues\b"),
    _rule(Category.SQL_INJECTION, "exec-procedure", r"\b(?:xp_cmdshell|sp_executesql|sp_oacreate)\b"),
    _rule(Category.SQL_INJECTION, "exec-call", r"\bexec(?:ute)?\s*\("),
    _rule(Category.SQL_INJECTION, "time-based", r"\b(?:sleep|pg_sleep|benchmark)\s*\(\s*\d+"),
    _rule(Category.SQL_INJECTION, "waitfor-delay", r"\bwaitfor\s+delay\b"),
    _rule(Category.SQL_INJECTION, "schema-enumeration", r"\b(?:information_schema|pg_catalog|sysobjects|sqlite_master)\b"),
    _rule(Category.SQL_INJECTION, "char-obfuscation", r"\b(?:char|chr|ascii)\s*\(\s*\d+\s*(?:,\s*\d+\s*)*\)"),
    _rule(
        Category.SQL_INJECTION,
        "cast-convert",
        r"\b(?:cast|convert)\s*\(\s*[\w@']+\s+as\s+"
        r"(?:int|integer|varchar|nvarchar|char|text|numeric|decimal|date|signed|unsigned)\b",
    ),
)


# ===========================================================================
# XSS
# ===========================================================================

_EVENT_HANDLERS = (
    r"abort|blur|change|click|dblclick|error|focus|focusin|focusout|input|"
    r"keydown|keypress|keyup|load|mousedown|mouseenter|mouseleave|mousemove|"
    r"mouseout|mouseover|mouseup|pointerdown|pointerenter|pointerover|reset|"
    r"resize|scroll|select|submit|toggle|unload|animationstart|animationend|"
    r"transitionend|begin|end|wheel|contextmenu|beforeunload|hashchange|message"
)

XSS_RULES: tuple[Rule, ...] = (
    _rule(Category.XSS, "script-block", r"<\s*script\b[^>]*>.*<\s*/\s*script\s*>"),
    _rule(Category.XSS, "script-open-tag", r"<\s*script\b[^>]*>"),
    _rule(Category.XSS, "script-close-tag", r"<\s*/\s*script\s*>"),
    _rule(Category.XSS, "event-handler", r"\bon(?:" + _EVENT_HANDLERS + r")\s*="),
    _rule(Category.XSS, "tag-event-handler", r"<[a-z][^>]*\son[a-z]+\s*="),
    _rule(Category.XSS, "javascript-uri", r"javascript\s*:"),
    _rule(Category.XSS, "javascript-uri-encoded", r"javascript\s*%(?:25)?3a"),
    _rule(Category.XSS, "vbscript-uri", r"vbscript\s*:"),
    _rule(Category.XSS, "data-html-uri", r"data\s*:\s*text/html"),
    _rule(Category.XSS, "iframe-tag", r"<\s*iframe\b"),
    _rule(Category.XSS, "object-tag", r"<\s*object\b"),
    _rule(Category.XSS, "embed-tag", r"<\s*embed\b"),
    _rule(Category.XSS, "svg-onload", r"<\s*svg\b[^>]*\bon(?:load|error)\b"),
    _rule(Category.XSS, "img-javascript", r"<\s*img\b[^>]*\bsrc\s*=\s*" + _QUOTE + r"?\s*javascript:"),
    _rule(Category.XSS, "eval-call", r"\beval\("),
    _rule(Category.XSS, "css-expression", r":\s*expression\s*\("),
    _rule(Category.XSS, "timer-string-call", r"\bset(?:timeout|interval)\s*\("),
    _rule(Category.XSS, "function-constructor", r"\bnew\s+function\s*\("),
    _rule(Category.XSS, "document-access", r"\bdocument\s*\.\s*(?:cookie|write|location|domain)\b"),
    _rule(Category.XSS, "entity-encoded-script", r"(?:&#x0*3c;|&#0*60;|&lt;)\s*/?\s*script"),
)


# ===========================================================================
# PATH TRAVERSAL
# ===========================================================================

PATH_TRAVERSAL_RULES: tuple[Rule, ...] = (
    _rule(Category.PATH_TRAVERSAL, "dot-dot-slash", r"\.\./", case_sensitive=True),
    _rule(Category.PATH_TRAVERSAL, "dot-dot-backslash", r"\.\.\\", case_sensitive=True),
    _rule(Category.PATH_TRAVERSAL, "encoded-slash", r"\.\.%(?:25)?(?:2f|5c)"),
    _rule(Category.PATH_TRAVERSAL, "encoded-dots", r"%(?:25)?2e%(?:25)?2e(?:%(?:25)?(?:2f|5c)|/|\\)"),
    _rule(Category.PATH_TRAVERSAL, "overlong-utf8", r"\.\.%(?:c0%af|c1%9c|c0%2f|c0%5c)"),
    _rule(Category.PATH_TRAVERSAL, "unix-sensitive-file", r"/etc/(?:passwd|shadow|hosts|group|sudoers)\b"),
    _rule(Category.PATH_TRAVERSAL, "proc-self", r"/proc/self/(?:environ|cmdline|fd|maps)\b"),
    _rule(Category.PATH_TRAVERSAL, "windows-system-file", r"\bwindows[/\\](?:system32|win\.ini)\b"),
    _rule(Category.PATH_TRAVERSAL, "boot-ini", r"\bboot\.ini\b"),
    _rule(Category.PATH_TRAVERSAL, "windows-drive-path", r"^/?[a-z]:\\"),
)


# ===========================================================================
# COMMAND INJECTION
# Separators count only when followed by a command name, so plain
# punctuation in free text and JSON-looking strings is not a finding.
# ===========================================================================

_SHELL_COMMANDS = (
    r"nc|netcat|ncat|bash|sh|zsh|cmd|powershell|python[23]?|perl|ruby|php|"
    r"whoami|id|cat|ls|pwd|uname|ps|netstat|ifconfig|ipconfig|ping|curl|wget|"
    r"chmod|chown|rm|kill|nslookup|telnet|grep|awk|sed|base64|echo"
)

COMMAND_INJECTION_RULES: tuple[Rule, ...] = (
    _rule(Category.COMMAND_INJECTION, "separator-command", r"(?:;|\|\|?|&&)\s*(?:" + _SHELL_COMMANDS + r")\b"),
    _rule(
        Category.COMMAND_INJECTION,
        "windows-command",
        r"(?:;|&&|\|)\s*(?:dir|type|copy|del|rmdir|mkdir|net\s+user|reg\s+query)\b",
    ),
    _rule(Category.COMMAND_INJECTION, "command-substitution", r"\$\([^)]+\)"),
    _rule(Category.COMMAND_INJECTION, "backtick-substitution", r"`[^`]+`"),
    _rule(Category.COMMAND_INJECTION, "variable-call", r"\$\{?[a-z_]\w*\}?\s*\("),
    _rule(
        Category.COMMAND_INJECTION,
        "exec-function",
        r"\b(?:system|passthru|shell_exec|proc_open|popen|pcntl_exec|os\.system|subprocess\.\w+)\s*\(",
    ),
    _rule(
        Category.COMMAND_INJECTION,
        "redirect-to-system-path",
        r"(?:^|\s)(?:>>?|<)\s*/(?:etc|tmp|dev|var|bin|usr|root|proc)/",
    ),
    _rule(Category.COMMAND_INJECTION, "reverse-shell", r"/dev/(?:tcp|udp)/"),
)


# ===========================================================================
# SUSPICIOUS FILES
# ===========================================================================

SUSPICIOUS_FILE_RULES: tuple[Rule, ...] = (
    _rule(
        Category.SUSPICIOUS_FILES,
        "executable-extension",
        r"\.(?:php[345]?|phtml|phps|jsp|asp|aspx|cgi|pl|sh|bat|cmd|exe|dll|scr|vbs|js|jar|war|ear|py|rb)$",
    ),
)


# ===========================================================================
# REGISTRY
# ===========================================================================

PATTERN_REGISTRY: Mapping[str, tuple[Rule, ...]] = MappingProxyType(
    {
        Category.SQL_INJECTION: SQL_INJECTION_RULES,
        Category.XSS: XSS_RULES,
        Category.PATH_TRAVERSAL: PATH_TRAVERSAL_RULES,
        Category.COMMAND_INJECTION: COMMAND_INJECTION_RULES,
        Category.SUSPICIOUS_FILES: SUSPICIOUS_FILE_RULES,
    }
)


def rules_for(category: str) -> tuple[Rule, ...]:
    """Return the ordered rules of ``category``.

    Raises:
        KeyError: If ``category`` is not a registered category tag.
    """
    return PATTERN_REGISTRY[category]
