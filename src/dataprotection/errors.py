# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Exceptions raised while reconciling backups."""


class DataProtectionError(Exception):
    """Base class for data protection exceptions."""


class FatalError(DataProtectionError):
    """The backup can never succeed: it is marked Failed with the error as reason."""


class RequeueError(DataProtectionError):
    """The pass can not progress now and must be retried after ``after`` seconds."""

    def __init__(self, message: str, after: float) -> None:
        super().__init__(message)
        self.after = after


class InvalidPhaseError(DataProtectionError, ValueError):
    """A phase string that is not a known phase."""


class InvalidTransitionError(DataProtectionError, ValueError):
    """A phase transition that the backup state machine does not allow."""
