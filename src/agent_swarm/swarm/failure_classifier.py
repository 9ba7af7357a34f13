"""Deterministic command failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

COMMAND_FAILURE_CLASSIFIER_VERSION = 1

_LOCK_CONTENTION_PATTERNS: tuple[str, ...] = (
    "index.lock",
    "unable to create",
    "could not lock",
    "cannot lock ref",
    "another git process",
    "resource temporarily unavailable",
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "too many requests",
    "rate limit",
    "try again later",
)
_FATAL_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "not a git repository",
    "already exists",
    "invalid reference",
    "unknown option",
    "usage:",
)


@dataclass(slots=True)
class CommandFailureClassification:
    """Normalized failure classification result."""

    transient: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and reports."""

        return {
            "classifier_version": COMMAND_FAILURE_CLASSIFIER_VERSION,
            "transient": self.transient,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_command_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> CommandFailureClassification:
    """Classify a nonzero command exit into a deterministic retry class."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _LOCK_CONTENTION_PATTERNS)
    if pattern is not None:
        return CommandFailureClassification(
            transient=True,
            reason_code="lock_contention",
            matched_rule="lock_contention",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _FATAL_PATTERNS)
    if pattern is not None:
        return CommandFailureClassification(
            transient=False,
            reason_code="command_fatal",
            matched_rule="fatal_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return CommandFailureClassification(
            transient=True,
            reason_code="command_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return CommandFailureClassification(
        transient=False,
        reason_code="command_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
