class SettlementError(Exception):
    """Base class for every error raised by the settlement service."""


class ValidationError(SettlementError):
    pass


class ConfigurationError(SettlementError):
    pass


class InvalidState(SettlementError):
    pass


class ConflictError(SettlementError):
    """Compare-and-set lost: the persisted status was not the expected one."""

    def __init__(self, order_id: str, expected, current):
        self.order_id = order_id
        self.expected = expected
        self.current = current
        super().__init__(
            f"Order {order_id} is {current.value}, expected {expected.value}"
        )


class OrderNotFound(SettlementError):
    pass


class SignatureMismatch(SettlementError):
    pass
