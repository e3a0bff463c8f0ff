from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class NotFoundError(BusinessError):
    pass


class InvalidStateError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ConfigError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class RemoteError(ExternalServiceError):
    """El servicio remoto rechazó la petición.

    ``code`` viaja hasta la entrada del outbox como ``last_error_code``;
    si se reintenta lo decide ``RetryPolicy.retryable_codes``.
    """

    def __init__(self, message: str, *, code: str = "remote_error") -> None:
        super().__init__(message)
        self.code = code


class ConflictError(RemoteError):
    def __init__(
        self,
        message: str,
        *,
        server_timestamp: str | None = None,
        remote_snapshot: dict | None = None,
    ) -> None:
        super().__init__(message, code="conflict")
        self.server_timestamp = server_timestamp
        self.remote_snapshot = remote_snapshot


class TransientExternalError(ExternalServiceError):
    pass


class NetworkError(TransientExternalError):
    def __init__(self, message: str, *, code: str = "network") -> None:
        super().__init__(message)
        self.code = code
