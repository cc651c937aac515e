from __future__ import annotations


class NotFoundError(LookupError):
    pass


class DuplicateAccountError(ValueError):
    def __init__(self, message: str, existing: dict[str, object]) -> None:
        super().__init__(message)
        self.existing = existing


class AccountInactiveError(ValueError):
    pass


class ReadOnlyModeError(RuntimeError):
    pass
