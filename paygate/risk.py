"""
Pre-charge risk assessment.

The gate always answers. When scoring is disabled, times out or errors, the
result is ``allow`` with a reason explaining why (fail-open); the payment
flow is never aborted by the gate itself.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog

logger = structlog.get_logger(__name__)

ALLOW = "allow"
CHALLENGE = "challenge"
BLOCK = "block"

CONTEXT_FIELDS = (
    "ip",
    "user_agent",
    "accept_language",
    "referer",
    "device_id",
    "session_id",
    "path",
    "method",
    "user_id",
    "timestamp",
)


@dataclass
class RiskAssessment:
    enabled: bool
    score: int
    action: str
    reasons: list[str] = field(default_factory=list)
    session_id: str | None = None
    request_id: str | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def blocked(self) -> bool:
        return self.action == BLOCK

    def to_snapshot(self) -> dict:
        return {
            "enabled": self.enabled,
            "score": self.score,
            "action": self.action,
            "reasons": list(self.reasons),
            "session_id": self.session_id,
            "request_id": self.request_id,
            "checked_at": self.checked_at.isoformat(),
        }


def project_context(context: dict | None) -> dict:
    """Keep only the allow-listed request attributes."""
    if not context:
        return {}
    return {key: context[key] for key in CONTEXT_FIELDS if context.get(key) is not None}


def risk_level(score: int) -> str:
    if score >= 75:
        return "high"
    if score >= 50:
        return "medium"
    if score >= 25:
        return "low"
    return "minimal"


def summarize(assessment: RiskAssessment | None) -> dict:
    if assessment is None or not assessment.enabled:
        return {"fraud_check_enabled": False}
    return {
        "fraud_check_enabled": True,
        "score": assessment.score,
        "level": risk_level(assessment.score),
        "action": assessment.action,
        "reasons": list(assessment.reasons),
        "session_id": assessment.session_id,
    }


class RiskGate:
    def __init__(
        self,
        api_key: str | None,
        endpoint: str,
        enabled: bool = True,
        block_threshold: int = 75,
        challenge_threshold: int = 50,
        timeout: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.block_threshold = block_threshold
        self.challenge_threshold = challenge_threshold
        self._enabled = enabled
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.api_key)

    def classify(self, score: int) -> str:
        if score >= self.block_threshold:
            return BLOCK
        if score >= self.challenge_threshold:
            return CHALLENGE
        return ALLOW

    def assess(self, transaction: dict, context: dict | None = None) -> RiskAssessment:
        if not self.enabled:
            logger.info("risk_check_disabled", order_id=transaction.get("order_id"))
            return RiskAssessment(enabled=False, score=0, action=ALLOW, reasons=["fraud_detection_disabled"])

        body = {
            "transaction": {
                "order_id": transaction.get("order_id"),
                "user_id": transaction.get("user_id"),
                "amount": transaction.get("amount"),
                "currency": transaction.get("currency"),
            },
            "context": project_context(context),
        }
        try:
            response = self._client.post(
                f"{self.endpoint}/v1/assess",
                json=body,
                headers={"X-API-Key": self.api_key},
            )
            response.raise_for_status()
            data = response.json()
            score = max(0, min(100, int(data.get("risk_score", data.get("score", 0)) or 0)))
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("risk_check_failed", order_id=transaction.get("order_id"), error=str(exc))
            return RiskAssessment(enabled=True, score=0, action=ALLOW, reasons=["fraud_check_error"])

        reasons = data.get("reasons", data.get("reason")) or []
        if isinstance(reasons, str):
            reasons = [reasons]
        assessment = RiskAssessment(
            enabled=True,
            score=score,
            action=self.classify(score),
            reasons=[str(reason) for reason in reasons],
            session_id=data.get("session_id"),
            request_id=data.get("request_id") or data.get("requestId"),
        )
        logger.info(
            "risk_check_completed",
            order_id=transaction.get("order_id"),
            score=assessment.score,
            action=assessment.action,
            reasons=assessment.reasons,
        )
        return assessment
