from __future__ import annotations


class SearchHubError(Exception):
    """Base class for every error raised by the search backend."""


class RequestValidationError(SearchHubError, ValueError):
    pass


class ConnectorNotLoadedError(SearchHubError, LookupError):
    pass


class AccountNotFoundError(SearchHubError, LookupError):
    pass


class InvalidAuthTransition(SearchHubError, RuntimeError):
    pass


class ConnectorError(SearchHubError):
    def __init__(self, message: str, *, platform: str | None = None, account_id: str | None = None):
        super().__init__(message)
        self.platform = platform
        self.account_id = account_id


class TransientError(ConnectorError):
    """Network failure, 5xx or rate limit. Safe to retry; account status is untouched."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthExpiredError(ConnectorError):
    """The access token was rejected; a refresh should be attempted."""


class ReauthRequiredError(ConnectorError):
    """The refresh token is gone or dead; the user has to authorize again."""


class PermissionDeniedError(ConnectorError):
    """Missing scope or membership for a single container."""


class ContainerNotFoundError(ConnectorError):
    pass


class PlatformSearchError(ConnectorError):
    def __init__(self, message: str, *, errors: dict[str, BaseException] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = dict(errors or {})

    @property
    def requires_reauth(self) -> bool:
        return bool(self.errors) and any(isinstance(e, ReauthRequiredError) for e in self.errors.values())


class TokenProviderError(SearchHubError):
    def __init__(self, message: str, *, requires_reauth: bool = False, code: int | str | None = None):
        super().__init__(message)
        self.requires_reauth = requires_reauth
        self.code = code


def error_kind(error: BaseException) -> str:
    """Classify a platform failure as reauth, auth, permission, not_found, transient or unknown."""
    if isinstance(error, PlatformSearchError):
        if error.requires_reauth:
            return "reauth"
        kinds = {error_kind(nested) for nested in error.errors.values()}
        return kinds.pop() if len(kinds) == 1 else "unknown"
    if isinstance(error, TokenProviderError):
        return "reauth" if error.requires_reauth else "auth"
    if isinstance(error, ReauthRequiredError):
        return "reauth"
    if isinstance(error, AuthExpiredError):
        return "auth"
    if isinstance(error, PermissionDeniedError):
        return "permission"
    if isinstance(error, ContainerNotFoundError):
        return "not_found"
    if isinstance(error, TransientError):
        return "transient"
    return "unknown"
