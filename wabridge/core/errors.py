"""wabridge – Error taxonomy.

Background paths catch these and degrade to a logged no-op; foreground
actions (session activation, manual send, broadcast start) surface them.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class TransportError(GatewayError):
    """Connection drop or send failure on the messaging transport."""


class PersistenceError(GatewayError):
    """A store operation failed."""


class NotFoundError(GatewayError):
    """The requested tenant session (or record) does not exist."""


class GenerationError(GatewayError):
    """No AI reply could be produced."""


class DispatchError(GatewayError):
    """A single broadcast recipient could not be reached."""
