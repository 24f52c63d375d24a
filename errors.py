# SPDX-License-Identifier: GPL-3.0-or-later
from typing import Optional


class AutomateError(Exception):
    """Base class for every error raised by the recorder/player core."""


class HookUnavailable(AutomateError):
    """The global input hook could not be acquired (permissions or another session)."""


class OutOfRange(AutomateError, IndexError):
    pass


class InvalidInput(AutomateError, ValueError):
    """Image buffers the locator cannot work with."""


class InvalidTimeline(AutomateError, ValueError):
    pass


class TargetNotFound(AutomateError):
    def __init__(self, message: str, confidence: float = 0.0) -> None:
        super().__init__(message)
        self.confidence = confidence


class CorruptArchive(AutomateError):
    pass


class SimulationRejected(AutomateError):
    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause
