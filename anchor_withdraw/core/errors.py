from typing import Optional


class WithdrawalFlowError(Exception):
    """Base class for every error raised by the withdrawal flow."""


class IllegalTransitionError(WithdrawalFlowError):
    """An action was dispatched from a state that does not allow it.

    This is a wiring bug in the caller, never a runtime condition to recover from.
    """

    def __init__(self, action_type: str, step: str, message: Optional[str] = None):
        self.action_type = action_type
        self.step = step
        super().__init__(message or f"Cannot perform {action_type} in state {step}.")


class UnexpectedActionError(WithdrawalFlowError):
    def __init__(self, action_type):
        self.action_type = action_type
        super().__init__(f"Unexpected action: {action_type}")


class InvalidStateError(WithdrawalFlowError, ValueError):
    """A state value was constructed with a combination of fields it cannot hold."""


class AnchorResponseError(WithdrawalFlowError):
    def __init__(self, status_code: Optional[int], message: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        if message:
            text = f"Anchor responded with status code {status_code}: {message}"
        else:
            text = f"Anchor responded with unexpected status code: {status_code}"
        super().__init__(text)


class AttemptBusyError(WithdrawalFlowError):
    """Another call for the same attempt is still in flight."""
