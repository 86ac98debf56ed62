from datetime import timedelta

from subsync import extensions
from subsync.billing.applier import SideEffectApplier
from subsync.billing.dead_letter import DeadLetterLog
from subsync.billing.engine import ReconciliationEngine
from subsync.billing.ledger import ProcessedEventLedger
from subsync.billing.locks import build_account_locks
from subsync.billing.providers import build_provider_registry
from subsync.billing.resolver import AccountResolver
from subsync.billing.state_machine import ReconciliationStateMachine
from subsync.billing.sweep import TierSweeper
from subsync.webhooks.dispatcher import WebhookDispatcher


def init_webhooks(app, paypal_session=None, locks=None):
    """Construct the reconciliation pipeline once and hang it off app.extensions."""
    config = app.config

    registry = build_provider_registry(config, paypal_session=paypal_session)
    ledger = ProcessedEventLedger()
    engine = ReconciliationEngine(
        resolver=AccountResolver(),
        state_machine=ReconciliationStateMachine(
            default_plan=config["DEFAULT_PLAN"],
            past_due_grace=timedelta(days=config["PAST_DUE_GRACE_DAYS"]),
        ),
        applier=SideEffectApplier(),
        ledger=ledger,
        locks=locks or build_account_locks(config, extensions.redis_client),
    )
    dead_letters = DeadLetterLog(max_attempts=config["DEAD_LETTER_MAX_ATTEMPTS"])
    dispatcher = WebhookDispatcher(registry, engine, dead_letters)
    sweeper = TierSweeper(engine.state_machine, engine.applier, engine.locks)

    app.extensions["provider_registry"] = registry
    app.extensions["reconciliation_engine"] = engine
    app.extensions["processed_event_ledger"] = ledger
    app.extensions["dead_letter_log"] = dead_letters
    app.extensions["webhook_dispatcher"] = dispatcher
    app.extensions["tier_sweeper"] = sweeper
    return dispatcher
