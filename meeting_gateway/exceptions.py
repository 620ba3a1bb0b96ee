"""Errors raised by the gateway's external collaborators."""


class ProvisioningError(RuntimeError):
    """No temporary recognition key could be obtained."""


class PersistenceError(RuntimeError):
    """A finalized sentence could not be stored or history could not be read."""
