"""
HealthGate Backend — Suspicious-Input Detector & IP Blocklist
===============================================================

What:  Regex-family scan of request payloads (query, body, route params),
       a sanitizer for "sanitize" mode, per-IP escalation of repeated
       suspicious payloads, and the IP blocklist checked first on every request.
Why:   Cheap first-line filtering of obvious injection probes in front of the
       patient-portal handlers, and automatic blocking of IPs that keep probing.
How:   - SuspiciousInputDetector: ordered pattern families, recursive scan
       - SuspiciousActivityMonitor: trailing-window event count per IP in the
         CounterStore; crossing the threshold blocks the IP
       - IpBlocklist: `blocked:<ip>` keys with optional expiry
Who:   Used by the blocklist and input-scan pipeline stages, the brute-force
       tracker and the admin security routes.

Pattern families (checked in this order, first match wins):
    1. sql_injection       UNION SELECT, DROP TABLE, ' OR 1=1, quote + comment ...
    2. xss                 <script, javascript:, inline event handlers, <iframe
    3. path_traversal      ../  ..\\  and their percent-encoded forms
    4. command_injection   &&  ||  backticks  $(...)  ; followed by a shell tool

Limitations:
    These are heuristics. They will flag some harmless text and miss
    obfuscated payloads. They complement parameterized queries and output
    encoding; they never replace them.
"""

import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Pattern, Tuple

import bleach

from healthgate.config import Settings, settings as default_settings
from healthgate.services.counter_store import CounterStore

security_logger = logging.getLogger("healthgate.security")

SAMPLE_LENGTH = 100
_MAX_SANITIZE_PASSES = 5


class ThreatKind(str, enum.Enum):
    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"
    COMMAND_INJECTION = "command_injection"


# ── Pattern Families ──────────────────────────────────────────────────────
# Order matters: a payload matching several families reports the first one.
_PATTERNS: List[Tuple[ThreatKind, Pattern[str]]] = [
    (
        ThreatKind.SQL_INJECTION,
        re.compile(
            r"(\bunion\s+(all\s+)?select\b)"
            r"|(\binsert\s+into\b)"
            r"|(\bdelete\s+from\b)"
            r"|(\bupdate\s+\w+\s+set\b)"
            r"|(\bdrop\s+(table|database|schema)\b)"
            r"|(\b(alter|truncate)\s+table\b)"
            r"|(\bexec(ute)?\s*(\(|\s+xp_))"
            r"|(\bdeclare\s+@)"
            r"|('\s*(or|and)\s+'?\w+'?\s*=\s*'?\w+)"
            r"|('\s*\)?\s*;?\s*--)"
            r"|(;\s*--)"
            r"|(/\*[\s\S]*?\*/)",
            re.IGNORECASE,
        ),
    ),
    (
        ThreatKind.XSS,
        re.compile(
            r"(<\s*script\b)|(javascript\s*:)|(\bon\w+\s*=)|(<\s*iframe\b)|(<\s*object\b)",
            re.IGNORECASE,
        ),
    ),
    (
        ThreatKind.PATH_TRAVERSAL,
        re.compile(r"(\.\./)|(\.\.\\)|(%2e%2e%2f)|(%2e%2e%5c)|(%2e%2e/)|(\.\.%2f)", re.IGNORECASE),
    ),
    (
        ThreatKind.COMMAND_INJECTION,
        re.compile(
            r"(&&)|(\|\|)|(`[^`]*`)|(\$\([^)]*\))"
            r"|(;\s*(rm|cat|ls|wget|curl|bash|sh|nc|chmod|python|perl)\b)"
            r"|(\|\s*(sh|bash|nc)\b)",
            re.IGNORECASE,
        ),
    ),
]

_SCRIPT_BLOCK = re.compile(r"<\s*script\b[^>]*>[\s\S]*?<\s*/\s*script\s*>", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)


@dataclass(frozen=True)
class Finding:
    """
    A flagged payload value.

    Attributes:
        kind:      Which pattern family matched first
        location:  Dotted path to the value, e.g. "body.profile.bio" or "query.q"
        sample:    First 100 characters of the offending value (for logs only)
    """

    kind: ThreatKind
    location: str
    sample: str


@dataclass(frozen=True)
class SuspiciousEvent:
    source_ip: str
    kind: ThreatKind
    path: str
    timestamp: int
    principal_id: Optional[str] = None


class SuspiciousInputDetector:
    """
    Stateless pattern scanner.

    scan() returns the first Finding or None (clean). sanitize() returns a
    copy of the payload with offending substrings removed, guaranteed to
    scan clean afterwards.
    """

    @staticmethod
    def classify(value: str) -> Optional[ThreatKind]:
        for kind, pattern in _PATTERNS:
            if pattern.search(value):
                return kind
        return None

    def scan(self, payload: Any, location: str = "") -> Optional[Finding]:
        """Depth-first scan of every string leaf in dicts/lists/tuples."""
        if isinstance(payload, str):
            kind = self.classify(payload)
            if kind is not None:
                return Finding(kind=kind, location=location or "value", sample=payload[:SAMPLE_LENGTH])
            return None
        if isinstance(payload, Mapping):
            for key, value in payload.items():
                child = f"{location}.{key}" if location else str(key)
                finding = self.scan(value, child)
                if finding:
                    return finding
            return None
        if isinstance(payload, (list, tuple)):
            for index, value in enumerate(payload):
                finding = self.scan(value, f"{location}[{index}]")
                if finding:
                    return finding
        return None

    def sanitize(self, payload: Any) -> Any:
        """Return a sanitized copy; non-string leaves pass through unchanged."""
        if isinstance(payload, str):
            return self._sanitize_string(payload)
        if isinstance(payload, Mapping):
            return {key: self.sanitize(value) for key, value in payload.items()}
        if isinstance(payload, list):
            return [self.sanitize(value) for value in payload]
        if isinstance(payload, tuple):
            return tuple(self.sanitize(value) for value in payload)
        return payload

    def _sanitize_string(self, value: str) -> str:
        # Removing one match can splice a new one together ("..././" → "../"),
        # so repeat until clean.
        for _ in range(_MAX_SANITIZE_PASSES):
            kind = self.classify(value)
            if kind is None:
                return value
            if kind is ThreatKind.XSS:
                value = _SCRIPT_BLOCK.sub("", value)
                value = bleach.clean(value, tags=set(), attributes={}, strip=True)
                value = _JS_SCHEME.sub("", value)
                value = _INLINE_HANDLER.sub("", value)
            else:
                value = dict(_PATTERNS)[kind].sub("", value)
        if self.classify(value) is not None:
            return ""
        return value


class IpBlocklist:
    """
    Blocked IPs live in the CounterStore as `blocked:<ip>`.

    A block with `seconds=None` lasts until an admin removes it.
    """

    def __init__(self, store: CounterStore):
        self._store = store

    @staticmethod
    def _key(ip: str) -> str:
        return f"blocked:{ip}"

    async def block(self, ip: str, seconds: Optional[int] = None, reason: str = "manual") -> None:
        ttl_ms = seconds * 1000 if seconds is not None else None
        await self._store.set_with_expiry(self._key(ip), reason, ttl_ms)
        security_logger.warning(
            "Blocked IP %s (reason=%s, duration=%s)",
            ip,
            reason,
            f"{seconds}s" if seconds is not None else "permanent",
        )

    async def unblock(self, ip: str) -> bool:
        removed = await self._store.delete(self._key(ip))
        if removed:
            security_logger.info("Unblocked IP %s", ip)
        return removed

    async def is_blocked(self, ip: str) -> bool:
        return await self._store.get(self._key(ip)) is not None


class SuspiciousActivityMonitor:
    """
    Counts suspicious events per IP over a trailing window.

    Escalation:
        Events are appended to `suspicious:<ip>`. When the number of events
        inside the trailing window exceeds the threshold (default: more than
        10 in 5 minutes), the IP is blocked for `suspicious_block_seconds`.
    """

    def __init__(
        self,
        store: CounterStore,
        blocklist: IpBlocklist,
        config: Optional[Settings] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        cfg = config or default_settings
        self._store = store
        self._blocklist = blocklist
        self._window_ms = cfg.suspicious_window * 1000
        self._threshold = cfg.suspicious_threshold
        self._block_seconds = cfg.suspicious_block_seconds
        self._clock = clock or (lambda: int(time.time() * 1000))

    def now_ms(self) -> int:
        return self._clock()

    async def record_and_maybe_block(self, event: SuspiciousEvent) -> bool:
        """
        Record one event. Returns True when this event caused a block.
        """
        count = await self._store.record_event(
            f"suspicious:{event.source_ip}", event.timestamp, self._window_ms
        )
        security_logger.warning(
            "Suspicious %s from %s on %s (principal=%s, %d in window)",
            event.kind.value,
            event.source_ip,
            event.path,
            event.principal_id or "-",
            count,
        )
        if count > self._threshold:
            await self._blocklist.block(
                event.source_ip, self._block_seconds, reason=f"suspicious_activity:{event.kind.value}"
            )
            return True
        return False
