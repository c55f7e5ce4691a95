"""Exception hierarchy for medbox_server."""


class MedboxError(Exception):
    """Base exception for all medbox_server errors."""


class ConfigError(MedboxError):
    """Invalid configuration value."""


class ValidationError(MedboxError):
    """Malformed request input (missing boxId, bad compartment entry, ...)."""


class StoreError(MedboxError):
    """A query or insert failed (constraint violation, malformed value)."""


class StoreUnavailableError(StoreError):
    """The store could not be reached in time.

    Raised when the pool stays exhausted past its timeout, a connection
    cannot be opened or is lost, or a statement hits the server-side
    statement timeout. Transient: the same request may succeed later.
    """
