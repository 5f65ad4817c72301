"""Shared payload keys so the route, CLI and cache agree on one JSON shape."""

from __future__ import annotations

# Result payload keys (wire-compatible with the existing web front end)
K_ICCID = "iccid"
K_CARD_TYPE = "cardType"
K_LOCATION = "location"
K_STATUS = "status"
K_ACTIVATION_TIME = "activationTime"
K_CANCELLATION_TIME = "cancellationTime"
K_USAGE = "usageMB"
K_RAW = "rawData"

# Error payload keys
K_ERROR = "error"
K_CODE = "code"
K_OUTCOME = "outcome"
K_SUGGESTION = "suggestion"
K_DETAILS = "details"
