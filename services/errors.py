"""
Orchestration error taxonomy

Each class maps to one failure family a user can run into. Declined
transactions and missing correlation records are outcomes, not exceptions.
"""


class OrchestrationError(Exception):
    """Base class for errors surfaced to the user as a message"""

    def __init__(self, message: str, reason: str = ''):
        super().__init__(message)
        self.message = message
        self.reason = reason or message


class ValidationError(OrchestrationError):
    """Malformed label, address or duration. No state is created."""
    pass


class PreconditionError(OrchestrationError):
    """Domain unavailable, no wallets, no EOA, insufficient funds"""
    pass


class ExternalServiceError(OrchestrationError):
    """RPC or HTTP collaborator failed; the user should retry later"""
    pass


class BridgeQuoteError(ExternalServiceError):
    """Fee quote could not be fetched or the amount is below the route minimum"""

    def __init__(self, message: str, amount_too_low: bool = False):
        super().__init__(message)
        self.amount_too_low = amount_too_low
