class CheckoutError(Exception):
    """Base for failures surfaced to the customer with a short reason."""

    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(CheckoutError):
    # store closed, empty cart, missing address, minimum order, bad coupon
    status_code = 400


class StockError(CheckoutError):
    status_code = 409


class GatewayError(CheckoutError):
    status_code = 502


class CommitError(CheckoutError):
    status_code = 500
    GENERIC = "Could not place your order, please try again"

    def __init__(self, reason: str | None = None):
        # backend text never reaches the customer
        super().__init__(self.GENERIC)
        self.internal = reason


class SideEffectError(Exception):
    """Post-commit effect failure. Logged only, never surfaced."""
