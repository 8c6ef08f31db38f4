"""
Ошибки предметной области.

Каждая операция либо применяется целиком, либо завершается ровно одной
из этих ошибок. HTTP-слой переводит их в ответы с соответствующим кодом.
"""


class LendingError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LendingError):
    status_code = 404


class ConflictError(LendingError):
    status_code = 409


class ValidationError(LendingError):
    status_code = 422


class PermissionDeniedError(LendingError):
    status_code = 403
