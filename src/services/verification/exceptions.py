"""Error taxonomy for the mentor verification pipeline.

Gate failures and "not yet proven" outcomes are ordinary result values,
not exceptions.  Exceptions here cover challenge failures (recoverable,
caller re-initiates), policy refusals, and persistence failures (fatal,
must surface to the caller).
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for verification pipeline errors."""


class ChallengeError(VerificationError):
    """The presented challenge cannot be used."""


class ChallengeNotFoundError(ChallengeError):
    def __init__(self, message: str = "code expired or not found") -> None:
        super().__init__(message)


class HandleMismatchError(ChallengeError):
    def __init__(self, message: str = "handle does not match session") -> None:
        super().__init__(message)


class AlreadyVerifiedError(VerificationError):
    def __init__(self, message: str = "Profile already verified") -> None:
        super().__init__(message)


class PersistenceError(VerificationError):
    """The verification record could not be read or written."""


class RecordConflictError(PersistenceError):
    """A concurrent writer updated the record first."""

    def __init__(self, subject_id: str, expected: int | None, actual: int) -> None:
        self.subject_id = subject_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Verification record for {subject_id!r} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )


# Internal transport errors; absorbed by the verifiers.


class GitHubAPIError(Exception):
    def __init__(self, status_code: int, path: str) -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(f"GitHub API returned {status_code} for {path}")


class GitHubNotFoundError(GitHubAPIError):
    pass


class OCRError(Exception):
    pass
