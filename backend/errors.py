from typing import Any, Optional


class ApiError(Exception):
    """Базовая ошибка API: у каждого вида свой HTTP-статус и имя"""

    status_code = 500
    kind = "ApiError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(ApiError):
    status_code = 401
    kind = "Unauthenticated"


class Forbidden(ApiError):
    status_code = 403
    kind = "Forbidden"


class InvalidFilterValue(ApiError):
    status_code = 400
    kind = "InvalidFilterValue"

    def __init__(self, field: str, value: Any, message: Optional[str] = None):
        super().__init__(message or f"Недопустимое значение {field}: {value!r}")
        self.field = field
        self.value = value


class NotFound(ApiError):
    status_code = 404
    kind = "NotFound"


class Conflict(ApiError):
    status_code = 400
    kind = "Conflict"


class UpstreamTimeout(ApiError):
    status_code = 504
    kind = "Timeout"
