from __future__ import annotations


TIMEOUT_MESSAGE = "Timeout dépassé"


class RunnerError(Exception):
    """Base class for failures that map onto the JSON error envelope."""

    status_code = 500
    kind = "runner_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InputError(RunnerError):
    status_code = 400
    kind = "input_error"


class PayloadTooLargeError(InputError):
    status_code = 413
    kind = "payload_too_large"


class LaunchError(RunnerError):
    kind = "launch_error"


class ContextError(RunnerError):
    kind = "context_error"


class ScriptError(RunnerError):
    kind = "script_error"


class ScriptTimeoutError(RunnerError):
    kind = "timeout"

    def __init__(self, message: str = TIMEOUT_MESSAGE) -> None:
        super().__init__(message)
