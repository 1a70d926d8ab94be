"""Exceptions raised by the step-up verification and account deletion flows."""


class VerificationError(Exception):
    """A one-time code check could not be carried out."""


class GateStateError(VerificationError):
    """An action was requested that the gate's current state does not allow."""


class AccountDeletionError(Exception):
    """The account deletion saga could not remove the auth record."""

    def __init__(self, message, *, report=None):
        super().__init__(message)
        self.report = report
