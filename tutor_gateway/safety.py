# tutor_gateway/safety.py
"""Prompt-injection screening of student input.

Built-in patterns are compiled once and always run first. Custom patterns come
from the tenant configuration as one regular expression per line and are
validated before use: overly long patterns and repeated groups that contain a
quantifier or an alternation are dropped, at most ``max_custom_patterns`` are
kept, and every match runs under a time budget.

A match whose text also appears in the trusted problem statement is skipped,
so students can quote the problem they are working on.
"""
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

import regex
from sqlalchemy.orm import Session

from tutor_gateway.config import settings
from tutor_gateway.database import SessionLocal
from tutor_gateway.models import SafetyIncident

logger = logging.getLogger(__name__)

PATTERN_FLAGS = regex.IGNORECASE
EXCERPT_RADIUS = 32

# Problem-statement whitelist
MAX_PROBLEM_CONTENT_LENGTH = 2000
MIN_WHITELISTED_MATCH_LENGTH = 8

BUILTIN_PATTERN_SOURCES = (
    r"忽略(之前|上文|所有).*提示",
    r"ignore (all|previous|earlier|prior) (instructions|messages|prompts)",
    r"disregard (all |the )?(previous|prior|above) (instructions|rules)",
    r"(从现在开始|现在起?).*(你是|扮演).*(猫娘|女仆|主人|角色|人格)",
    r"重置(设定|設定|系统|system)",
    r"system prompt",
    r"无条件服从",
    r"覆盖(系统|所有)提示",
    r"现在你是.*系统",
)

# Unbounded repetition: *, + or a {m,n} range
REPEAT = regex.compile(r"[*+]|\{\d*,\d*\}")
WHITESPACE = regex.compile(r"\s+")


class PatternOrigin(str, Enum):
    BUILTIN = "builtin"
    CUSTOM = "custom"


class SafetyPolicy(str, Enum):
    BLOCK = "block"
    LOG = "log"


@dataclass(frozen=True)
class SafetyPattern:
    source: str
    origin: PatternOrigin
    compiled: regex.Pattern


@dataclass(frozen=True)
class SafetyMatch:
    pattern: str
    origin: PatternOrigin
    excerpt: str


@dataclass(frozen=True)
class IncidentContext:
    tenant_id: str
    user_id: str
    conversation_id: Optional[str] = None
    question_type: Optional[str] = None


BUILTIN_PATTERNS: tuple[SafetyPattern, ...] = tuple(
    SafetyPattern(source, PatternOrigin.BUILTIN, regex.compile(source, PATTERN_FLAGS))
    for source in BUILTIN_PATTERN_SOURCES
)


def _skip_class(source: str, i: int) -> int:
    """Return the index just past the character class opening at source[i]."""
    i += 1
    if i < len(source) and source[i] == "^":
        i += 1
    if i < len(source) and source[i] == "]":
        i += 1
    while i < len(source) and source[i] != "]":
        i += 2 if source[i] == "\\" else 1
    return i + 1


def has_nested_quantifier(source: str) -> bool:
    """True if a repeated group contains a quantifier or an alternation at any depth.

    Catches (a+)+, ((a+))+, (\\w*x)* and (a|aa)+, the shapes that backtrack
    exponentially. Escapes and character classes are skipped.
    """
    # one flag per open group: does its body repeat or alternate?
    stack = [False]
    i = 0
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            i = _skip_class(source, i)
            continue

        if ch == "(":
            stack.append(False)
        elif ch == ")" and len(stack) > 1:
            ambiguous = stack.pop()
            if ambiguous and REPEAT.match(source, i + 1):
                return True
            stack[-1] = stack[-1] or ambiguous
        elif ch == "|":
            stack[-1] = True
        elif REPEAT.match(source, i):
            stack[-1] = True
        i += 1
    return False


def validate_custom_pattern(source: str, max_length: int) -> Optional[str]:
    """Return a rejection reason, or None if the pattern may be compiled."""
    if len(source) > max_length:
        return f"longer than {max_length} characters"
    if has_nested_quantifier(source):
        return "nested quantifiers"
    return None


def normalize_for_comparison(text: str) -> str:
    """Lowercase, collapse whitespace and fold full-width ASCII (Ａ, ！) to half-width."""
    folded = "".join(
        chr(ord(ch) - 0xFEE0) if "\uff01" <= ch <= "\uff5e" else ch
        for ch in WHITESPACE.sub(" ", text.lower())
    )
    return folded.strip()


def is_from_problem_statement(matched_text: str, normalized_problem: str) -> bool:
    """True if the matched text is quoted from the problem statement.

    Short matches never qualify, so a few shared characters cannot be used to
    slip an injection past the screener.
    """
    normalized = normalize_for_comparison(matched_text)
    if len(normalized) < MIN_WHITELISTED_MATCH_LENGTH:
        return False
    return normalized in normalized_problem


@functools.lru_cache(maxsize=64)
def compile_custom_patterns(text: Optional[str]) -> tuple[SafetyPattern, ...]:
    """Compile tenant patterns, one per line. Invalid lines are skipped."""
    if not text:
        return ()

    limit = settings.max_custom_patterns
    patterns = []
    for line in text.splitlines():
        source = line.strip()
        if not source or source.startswith("#"):
            continue

        if len(patterns) >= limit:
            logger.warning(f"More than {limit} custom safety patterns configured; ignoring the rest")
            break

        reason = validate_custom_pattern(source, settings.max_custom_pattern_length)
        if reason:
            logger.warning(f"Skipping custom safety pattern {source!r}: {reason}")
            continue

        try:
            compiled = regex.compile(source, PATTERN_FLAGS)
        except regex.error as e:
            logger.warning(f"Skipping custom safety pattern {source!r}: {e}")
            continue

        patterns.append(SafetyPattern(source, PatternOrigin.CUSTOM, compiled))
    return tuple(patterns)


def build_excerpt(text: str, start: int, end: int, max_length: int) -> str:
    """Cut the matched text plus some context, bounded to max_length characters."""
    lo = max(0, start - EXCERPT_RADIUS)
    hi = min(len(text), end + EXCERPT_RADIUS)
    if hi - lo > max_length:
        hi = lo + max_length
    prefix = "…" if lo > 0 else ""
    suffix = "…" if hi < len(text) else ""
    return f"{prefix}{text[lo:hi]}{suffix}"


class IncidentLog(Protocol):
    def record(self, context: IncidentContext, match: SafetyMatch) -> None:
        ...


class SqlIncidentLog:
    """Append-only incident log in the safety_incidents table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def record(self, context: IncidentContext, match: SafetyMatch) -> None:
        db = self._session_factory()
        try:
            db.add(SafetyIncident(
                tenant_id=context.tenant_id,
                user_id=context.user_id,
                conversation_id=context.conversation_id,
                question_type=context.question_type,
                matched_pattern=match.pattern,
                matched_excerpt=match.excerpt,
                created_at=datetime.utcnow(),
            ))
            db.commit()
        finally:
            db.close()

    def list_recent(self, limit: int = 20) -> list[SafetyIncident]:
        db = self._session_factory()
        try:
            return (
                db.query(SafetyIncident)
                .order_by(SafetyIncident.created_at.desc(), SafetyIncident.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()


class SafetyScreener:
    def __init__(
        self,
        incident_log: Optional[IncidentLog] = None,
        match_timeout: Optional[float] = None,
        policy: Optional[SafetyPolicy] = None,
    ):
        self._incident_log = incident_log
        self.match_timeout = match_timeout if match_timeout is not None else settings.safety_match_timeout_seconds
        self.policy = policy or SafetyPolicy(settings.safety_policy)

    def patterns(self, custom_patterns_text: Optional[str] = None) -> tuple[SafetyPattern, ...]:
        return BUILTIN_PATTERNS + compile_custom_patterns(custom_patterns_text)

    def scan(
        self,
        text: str,
        custom_patterns_text: Optional[str] = None,
        problem_content: Optional[str] = None,
    ) -> Optional[SafetyMatch]:
        """Return the first pattern match in text, built-ins before custom patterns.

        Matches quoted from problem_content are skipped and screening moves on
        to the next pattern.
        """
        if not text:
            return None

        trusted = normalize_for_comparison(problem_content[:MAX_PROBLEM_CONTENT_LENGTH]) if problem_content else ""

        for pattern in self.patterns(custom_patterns_text):
            try:
                found = pattern.compiled.search(text, timeout=self.match_timeout)
            except TimeoutError:
                logger.warning(f"Safety pattern {pattern.source!r} timed out; skipped")
                continue

            if found and trusted and is_from_problem_statement(found.group(0), trusted):
                logger.debug(f"Safety pattern {pattern.source!r} matched problem text; skipped")
                continue

            if found:
                return SafetyMatch(
                    pattern=pattern.source,
                    origin=pattern.origin,
                    excerpt=build_excerpt(text, found.start(), found.end(), settings.max_excerpt_length),
                )
        return None

    def screen(
        self,
        text: str,
        context: IncidentContext,
        *,
        code: Optional[str] = None,
        custom_patterns_text: Optional[str] = None,
        problem_content: Optional[str] = None,
    ) -> Optional[SafetyMatch]:
        """Scan student text, then attached code, and record an incident on match."""
        match = self.scan(text, custom_patterns_text, problem_content)
        if match is None and code and code.strip():
            match = self.scan(code, custom_patterns_text, problem_content)

        if match is None:
            return None

        logger.warning(
            f"Safety match for user {context.user_id} in tenant {context.tenant_id}: "
            f"pattern={match.pattern!r} excerpt={match.excerpt!r}"
        )
        if self._incident_log is not None:
            try:
                self._incident_log.record(context, match)
            except Exception as e:
                logger.error(f"Failed to record safety incident: {e}")
        return match
