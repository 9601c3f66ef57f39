"""Exception hierarchy for sync transport and pass failures.

Item-level outcomes (conflicts, unresolvable references) are reported as
values, never raised. These exceptions cover failures that apply to a whole
call or pass.
"""


class SyncError(RuntimeError):
    """Base exception raised for sync-related failures."""


class SyncDisabledError(SyncError):
    """Raised when sync operations are attempted while disabled."""


class ConfigurationError(SyncError):
    """Raised when required local settings are missing.

    Always raised before any network attempt is made.
    """


class AuthenticationError(SyncError):
    """Raised when the hub rejects the node id or API key.

    Terminal for the call; never retried automatically.
    """


class ConnectivityError(SyncError):
    """Raised on timeouts, DNS failures and refused connections.

    The next scheduled pass retries.
    """


class ProtocolError(SyncError):
    """Raised when the hub answers with a non-2xx status, an unparseable body
    or an application-level error flag."""
