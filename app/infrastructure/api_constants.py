"""
API endpoint constants and configuration.

This module contains the supervisor assignment service endpoint paths and
related constants.
"""


class SupervisorServiceEndpoints:
    """Supervisor assignment service endpoint paths."""

    BASE = "/supervisors"
    ASSIGN = f"{BASE}/assign"


class APIConstants:
    """General API configuration constants."""

    # HTTP Headers
    CONTENT_TYPE_JSON = "application/json"

    # Timeouts (in seconds)
    DEFAULT_TIMEOUT = 30.0
