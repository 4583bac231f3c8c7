class WalletServiceError(Exception):
    pass


class ValidationError(WalletServiceError):
    pass


class AuthenticationRequired(WalletServiceError):
    pass


class AuthorizationDenied(WalletServiceError):
    pass


class NotFoundError(WalletServiceError):
    pass


class ConflictError(WalletServiceError):
    pass


class InvalidStateError(ConflictError):
    pass


class InsufficientBalanceError(WalletServiceError):
    pass


class StorageError(WalletServiceError):
    pass
