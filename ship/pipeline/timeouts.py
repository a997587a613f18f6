from __future__ import annotations

# App Store Connect tokens may live at most 20 minutes.
ASC_TOKEN_LIFETIME_SECONDS = 20 * 60.0
# Re-mint a cached token this long before it actually expires.
ASC_TOKEN_REFRESH_SKEW_SECONDS = 60.0

# Idempotent App Store Connect read retry policy
ASC_READ_RETRY_ATTEMPTS = 3
ASC_READ_RETRY_DELAY_SECONDS = 2.0

# Local git operations on the signing store (status, add, commit)
GIT_TIMEOUT_SECONDS = 30.0
# Network-bound git operations (clone, pull, push)
GIT_NETWORK_TIMEOUT_SECONDS = 3 * 60.0

# Wait between attempts to take a held signing-store lease
SIGNING_LEASE_POLL_SECONDS = 1.0

# Signing sync is retried once after re-fetching authority state
SYNC_RETRY_ATTEMPTS = 1

# Polling for build processing after upload
PROCESSING_LOOKUP_ATTEMPTS = 20
