class MpesaError(Exception):
    """Base class for every error raised by the M-Pesa client."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ConfigurationError(MpesaError, ValueError):
    pass


class AuthenticationError(MpesaError):
    pass


class EncryptionError(MpesaError):
    pass


class ValidationError(MpesaError, ValueError):
    pass


class TransportError(MpesaError):
    pass


class GatewayError(MpesaError):
    """Raised when Daraja answers with a non-200 status or a body that is not JSON."""

    def __init__(self, message, status_code=None, response=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
