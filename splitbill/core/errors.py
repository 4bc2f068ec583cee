"""Settlement error taxonomy.

Every error raised by the settlement core derives from ``SplitBillError``.
The HTTP layer maps each class to a status code; services never catch
their own errors to turn them into return values.
"""


class SplitBillError(Exception):
    """Base class for settlement errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SplitValidationError(SplitBillError):
    """Invalid input at initiation time. Nothing was written."""
    pass


class StateConflictError(SplitBillError):
    """
    Action attempted against an incompatible state.

    ``already_terminal`` marks the benign case where the action was already
    applied (rejecting twice, paying twice): the stored state is unchanged.
    """

    def __init__(self, message: str, already_terminal: bool = False):
        super().__init__(message)
        self.already_terminal = already_terminal


class TransientStoreError(SplitBillError):
    """The Settlement Store could not be reached or rejected the operation."""
    pass


class PaymentDeclined(SplitBillError):
    """The payment gateway declined the attempt. Always retryable."""

    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason


class MaterializationConflict(SplitBillError):
    """Lost the order insert race for a materialization key."""

    def __init__(self, materialization_key: str):
        super().__init__(f"Order already exists for {materialization_key}")
        self.materialization_key = materialization_key


class SessionNotFoundError(SplitBillError):
    pass


class ParticipantNotFoundError(SplitBillError):
    pass
