"""Deterministic provider failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from genrelay.orchestrator.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 2

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "billing",
    "payment required",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_CONTENT_POLICY_PATTERNS: tuple[str, ...] = (
    "content policy",
    "safety system",
    "nsfw",
    "banned prompt",
    "moderation",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
)

_TERMINAL_STATUS_CODES: dict[int, FailureClass] = {
    401: FailureClass.ACCESS_OR_AUTH,
    402: FailureClass.BILLING_OR_QUOTA,
    403: FailureClass.ACCESS_OR_AUTH,
    451: FailureClass.CONTENT_POLICY,
}
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 409, 425, 429})


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class.is_retryable

    def to_event_details(self, *, provider: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(  # noqa: C901, PLR0911
    *,
    provider: str,
    message: str,
    status_code: int | None = None,
    transient: bool | None = None,
) -> ProviderFailureClassification:
    """Classify a provider failure into a deterministic retry class.

    An explicit ``transient`` flag from the adapter wins over text heuristics.
    """

    if transient is True:
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code=f"{provider}_reported_transient",
            matched_rule="adapter_transient",
            matched_pattern=None,
        )

    haystack = message.lower()

    # Terminal categories are checked first: "quota exceeded, try again later" is billing.
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.CONTENT_POLICY, "content_policy", _CONTENT_POLICY_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ProviderFailureClassification(
                failure_class=failure_class,
                reason_code=f"{provider}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if status_code is not None and status_code in _TERMINAL_STATUS_CODES:
        failure_class = _TERMINAL_STATUS_CODES[status_code]
        return ProviderFailureClassification(
            failure_class=failure_class,
            reason_code=f"{provider}_{failure_class.value}",
            matched_rule="status_code",
            matched_pattern=str(status_code),
        )

    if transient is False:
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
            reason_code=f"{provider}_reported_non_retryable",
            matched_rule="adapter_non_retryable",
            matched_pattern=None,
        )

    if status_code is not None and (
        status_code in _TRANSIENT_STATUS_CODES or status_code >= 500  # noqa: PLR2004
    ):
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code=f"{provider}_transient_status",
            matched_rule="transient_status_code",
            matched_pattern=str(status_code),
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code=f"{provider}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code=f"{provider}_provider_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    if status_code is not None and 400 <= status_code < 500:  # noqa: PLR2004
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
            reason_code=f"{provider}_client_error",
            matched_rule="client_error_status_code",
            matched_pattern=str(status_code),
        )

    # Unrecognized failures retry; attempt caps bound the cost.
    return ProviderFailureClassification(
        failure_class=FailureClass.PROVIDER_TRANSIENT,
        reason_code=f"{provider}_provider_unclassified",
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
