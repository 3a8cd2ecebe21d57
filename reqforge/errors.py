from typing import Optional


class ReqForgeError(Exception):
    """Base class for every failure raised by reqforge."""


class NotFound(ReqForgeError):
    pass


class AuthFailure(ReqForgeError):
    pass


class MissingCredential(AuthFailure):
    def __init__(self, name: str):
        super().__init__(f"{name} is not configured; set it in the environment or .env file.")
        self.name = name


class RemoteError(ReqForgeError):
    """A collection store call failed (network, validation, rate limit)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after


class UnsupportedOperation(RemoteError):
    pass


class GenerationError(ReqForgeError):
    pass


class MalformedGenerationOutput(ReqForgeError):
    """The generator answered, but not in the expected shape. Never fatal for bodies/query params."""

    def __init__(self, kind: str, text: str):
        super().__init__(f"Could not parse {kind} output: {text[:200]!r}")
        self.kind = kind
        self.text = text


class MalformedCollectionError(ReqForgeError):
    pass


class SyncAborted(ReqForgeError):
    """Raised inside branches that were about to start after another branch failed."""


class SyncError(ReqForgeError):
    def __init__(self, cause: BaseException, report):
        created = len(report.created_folders) + len(report.created_requests)
        super().__init__(f"Synchronization failed after creating {created} node(s): {cause}")
        self.cause = cause
        self.report = report
