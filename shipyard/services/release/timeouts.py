from __future__ import annotations

# gh API operations (view, create, edit, delete)
GH_TIMEOUT_SECONDS = 60.0

# Asset upload; archives are tens of MB on slow runners.
GH_UPLOAD_TIMEOUT_SECONDS = 15 * 60.0

# git ls-remote against the dependency index
GIT_NETWORK_TIMEOUT_SECONDS = 60.0

# cargo fetch / cargo build per invocation
FETCH_TIMEOUT_SECONDS = 30 * 60.0
BUILD_TIMEOUT_SECONDS = 2 * 60 * 60.0

# Idempotent GH read retry policy
GH_READ_RETRY_ATTEMPTS = 3
GH_READ_RETRY_DELAY_SECONDS = 1.0
