"""HTTP status classes shared by provider error mapping and the retry loop."""

from __future__ import annotations

# Transient statuses: throttling, conflicts and server-side failures.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Client errors that must fail on the first attempt.
NON_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({401, 403, 404})
