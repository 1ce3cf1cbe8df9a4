from __future__ import annotations
"""Domain errors raised by the permission core.

Each error carries the HTTP status the app factory's error handler renders it with.
"""


class AuthzError(Exception):
    status = 500
    title = 'Authorization Error'

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(AuthzError):
    status = 404
    title = 'Not Found'


class ValidationError(AuthzError):
    status = 400
    title = 'Bad Request'


class LastAdministratorError(AuthzError):
    status = 409
    title = 'Conflict'


__all__ = ['AuthzError', 'NotFound', 'ValidationError', 'LastAdministratorError']
