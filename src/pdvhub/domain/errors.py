class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class InsufficientStockError(AppError):
    pass


class BackendError(AppError):
    """Entity client, serverless function or webhook failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvoicePendingError(BackendError):
    """Invoice lookup reached SEFAZ but the XML is not available yet."""

    def __init__(self, message: str, status: str):
        super().__init__(message)
        self.status = status


class InvoiceParseError(AppError):
    pass


class SagaError(AppError):
    """A critical step failed; compensations already ran."""

    def __init__(self, step: str, cause: BaseException, compensation_errors: list[str] | None = None):
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause
        self.compensation_errors = compensation_errors or []


def extract_error_message(body: object, default: str = "Unexpected backend error.") -> str:
    """Best-effort message lookup in nested error payloads."""
    if isinstance(body, str):
        return body.strip() or default
    if not isinstance(body, dict):
        return default

    err = body.get("error")
    if isinstance(err, dict):
        for key in ("message", "description", "code"):
            if err.get(key):
                return str(err[key])
    if isinstance(err, str) and err:
        return err

    for key in ("message", "detail", "error_description", "msg"):
        if body.get(key):
            return str(body[key])
    return default
