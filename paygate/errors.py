class PaymentError(Exception):
    """Base class for every error the payment core raises on purpose."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    """Bad amount, currency, metadata or provider params. Raised before any network call."""

    status_code = 400


class RiskBlockedError(PaymentError):
    status_code = 403

    def __init__(self, message: str, payment_id: str | None = None, reasons: list[str] | None = None):
        super().__init__(message)
        self.payment_id = payment_id
        self.reasons = reasons or []


class ProviderInitiationError(PaymentError):
    """Provider rejected or could not be reached while creating the payment."""

    status_code = 502

    def __init__(self, message: str, payment_id: str | None = None, timed_out: bool = False):
        super().__init__(message)
        self.payment_id = payment_id
        self.timed_out = timed_out


class ProviderConfirmationError(PaymentError):
    """Confirm/capture failed. Money movement must be re-checked with a query."""

    status_code = 502


class ProviderQueryError(PaymentError):
    status_code = 502


class ProviderCancellationError(PaymentError):
    status_code = 502


class RefundError(PaymentError):
    status_code = 502


class NotFoundError(PaymentError):
    status_code = 404


class ConflictError(PaymentError):
    status_code = 409


class InvalidTransitionError(PaymentError):
    status_code = 409


class SignatureVerificationError(PaymentError):
    status_code = 400


class ProviderError(Exception):
    """Raised by adapters. The orchestrator translates it into the public taxonomy."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.message = message
        self.timed_out = timed_out
