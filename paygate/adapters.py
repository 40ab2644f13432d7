"""
Uniform provider interface.

Each adapter owns a translation table (``OUTCOMES``) from the provider's
native status vocabulary to the universal outcome set below. Inbound
events and explicit queries go through the same table.
"""
import abc
import enum
from dataclasses import dataclass, field

from paygate.models import PaymentStatus


class Outcome(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.value)


class Mode(str, enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


@dataclass
class InitiationResult:
    provider_transaction_id: str
    mode: Mode
    client_instructions: dict
    phone_number: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class ConfirmationResult:
    status: Outcome
    method_descriptor: str | None = None
    capture_id: str | None = None
    error_message: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class QueryResult:
    status: Outcome
    method_descriptor: str | None = None
    capture_id: str | None = None
    error_message: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    refunded_amount: int


class ProviderAdapter(abc.ABC):
    name: str
    OUTCOMES: dict = {}
    DEFAULT_OUTCOME = Outcome.FAILED
    # initiate may be re-sent with the same reference to recover a lost session
    IDEMPOTENT_INITIATE = False

    @classmethod
    def outcome_for(cls, code) -> Outcome:
        return cls.OUTCOMES.get(code, cls.DEFAULT_OUTCOME)

    def validate_params(self, amount: int, currency: str, params: dict) -> dict:
        """Provider-specific checks run before any network call. Returns normalized params."""
        return dict(params or {})

    @abc.abstractmethod
    def initiate(self, amount: int, currency: str, reference: str, callback_target: str | None, params: dict) -> InitiationResult:
        ...

    @abc.abstractmethod
    def confirm(self, provider_transaction_id: str) -> ConfirmationResult:
        ...

    @abc.abstractmethod
    def query(self, provider_transaction_id: str) -> QueryResult:
        ...

    @abc.abstractmethod
    def refund(self, payment, amount: int) -> RefundResult:
        ...

    def cancel(self, provider_transaction_id: str) -> None:
        """Pre-confirmation cancellation; providers without one cancel locally only."""
        return None
