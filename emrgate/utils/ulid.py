"""ULID generation for EMRGate.

ULIDs identify audit events (``AuditEvent.event_id``, the
``X-EMRGate-Event-ID`` response header) and server-side sessions. They are
26-character Crockford Base32 strings, lexicographically sortable by creation
time, and URL-safe, which lets a session ID be embedded in a token string.

Uses the ``python-ulid`` library. Do not hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        event_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(event_id) == 26
    """
    return str(ULID())
