class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(AppError):
    """Raised when search settings or the problem instance are invalid."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=422, details=details)


class EvaluationError(AppError):
    """Raised when a chromosome does not match the problem instance it is evaluated against."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=500, details=details)


class CommunicationError(AppError):
    """Raised when a peer cannot be reached or sends a malformed message."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=503, details=details)


class ConsensusDisagreement(AppError):
    """Raised when workers derive different stop decisions for the same round."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=500, details=details)
