class DirectoryError(Exception):
    """
    An error with a user-facing message and the HTTP status it maps to.
    """

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(DirectoryError):
    status = 400


class Unauthenticated(DirectoryError):
    status = 401


class Forbidden(DirectoryError):
    status = 403


class NotFound(DirectoryError):
    status = 404


class AlreadyVoted(DirectoryError):
    status = 429


class ProbeError(DirectoryError):
    status = 500


class PingError(Exception):
    pass
