from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


def not_found(entity: str, key: object) -> ApiError:
    code = f"{entity.upper().replace(' ', '_')}_NOT_FOUND"
    return ApiError(
        code=code,
        message=f"{entity} not found: {key}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.code == "STORE_CONFLICT"
