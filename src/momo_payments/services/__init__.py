"""Payment core services."""

from momo_payments.services.initiation import (
    InitiatePayment,
    InitiationResult,
    PaymentInitiator,
)
from momo_payments.services.monitor import (
    RecoveryOutcome,
    StuckSessionMonitor,
    SweepReport,
)
from momo_payments.services.notifications import (
    LoggingChannel,
    NotificationChannel,
    NotificationDispatcher,
    NotificationWorker,
)
from momo_payments.services.reconciler import OrderReconciler
from momo_payments.services.session_store import SessionStore, TransitionResult
from momo_payments.services.signatures import WebhookAuthenticator, sign_payload
from momo_payments.services.state_machine import (
    SessionStateMachine,
    SessionStatus,
    TransitionDecision,
    TransitionEvent,
)
from momo_payments.services.webhook_verifier import (
    IngestResult,
    WebhookVerifier,
    normalize_status,
)

__all__ = [
    # Session store / state machine
    "SessionStore",
    "TransitionResult",
    "SessionStateMachine",
    "SessionStatus",
    "TransitionDecision",
    "TransitionEvent",
    # Webhooks
    "WebhookAuthenticator",
    "WebhookVerifier",
    "IngestResult",
    "normalize_status",
    "sign_payload",
    # Monitor
    "StuckSessionMonitor",
    "SweepReport",
    "RecoveryOutcome",
    # Reconciliation
    "OrderReconciler",
    # Notifications
    "NotificationDispatcher",
    "NotificationWorker",
    "NotificationChannel",
    "LoggingChannel",
    # Initiation
    "PaymentInitiator",
    "InitiatePayment",
    "InitiationResult",
]
