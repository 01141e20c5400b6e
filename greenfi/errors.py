class GreenFiError(Exception):
    """Base error carrying the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GreenFiError):
    status_code = 400


class NotFoundError(GreenFiError):
    status_code = 404


class PersistenceError(GreenFiError):
    status_code = 500
