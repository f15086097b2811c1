"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Bad amount or wrong status precondition"""

    pass


class NotFoundError(DomainException):
    """Unknown auction, bid, deposit, purchase or escrow"""

    pass


class ConflictError(DomainException):
    """Duplicate escrow, already-ended auction, already-settled deposit or a lost race"""

    pass


class AuthorizationError(DomainException):
    """Caller is not allowed to act on this entity"""

    pass


class ExternalGatewayError(DomainException):
    """Payment provider rejected, could not confirm, or failed a call"""

    pass


class GatewayTimeoutError(ExternalGatewayError):
    """Payment provider did not answer within the configured timeout"""

    pass


class ConfigurationError(Exception):
    """Settings describe an unsafe or incomplete runtime setup"""

    pass
