"""Exit codes for the CLI.

The pipeline reports failures as values; this enum is the single place where
they are mapped to process exit codes for whatever system triggered the run.
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands.

    These values are used as process exit codes and should remain stable:
    - 0: Success
    - 1: User error (bad trigger context, invalid config)
    - 2: Environment error (gh/cargo missing, auth required)
    - 3: Build error (at least one target failed to build, package or verify)
    - 4: Network error (upload or hosting API failure)
    - 5: I/O error (file not found, permission denied)
    - 6: Release error (tag conflict, publish barrier refused)
    - 130: Run aborted by the user
    """

    OK = 0
    USER_ERROR = 1
    ENV_ERROR = 2
    BUILD_ERROR = 3
    NETWORK_ERROR = 4
    IO_ERROR = 5
    RELEASE_ERROR = 6
    ABORTED = 130

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        return self == ErrorCode.OK
