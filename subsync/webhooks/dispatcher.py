import logging

from subsync.billing.constants import ReconcileStatus
from subsync.errors import (
    InvalidSignature,
    StorageFailure,
    UnknownProvider,
    UnresolvedAccount,
    VerifierUnavailable,
)

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """
    HTTP-facing entry point: verify -> normalize -> reconcile.

    Once a delivery is verified the provider always gets a 200, because
    providers disable endpoints that keep failing. Anything that goes wrong
    after verification is written to the dead-letter log instead.
    """

    def __init__(self, registry, engine, dead_letters):
        self.registry = registry
        self.engine = engine
        self.dead_letters = dead_letters

    def dispatch(self, provider: str, raw_body: bytes, headers) -> tuple[dict, int]:
        try:
            adapter = self.registry.get(provider)
        except UnknownProvider:
            return {"error": "unknown_provider"}, 404

        headers = {k.lower(): v for k, v in dict(headers).items()}

        try:
            envelope = adapter.verifier.verify(raw_body, headers)
        except InvalidSignature as e:
            logger.warning(f"Rejected {provider} webhook: {e}")
            return {"error": "invalid_signature"}, 400
        except VerifierUnavailable as e:
            logger.error(f"{provider} verifier unavailable: {e}")
            return {"error": "verifier_unavailable"}, 500

        return self.process(envelope)

    def reconcile(self, provider, envelope):
        """Normalize and reconcile one verified envelope. Errors propagate."""
        adapter = self.registry.get(provider)
        event = adapter.normalizer.normalize(envelope)
        return self.engine.reconcile(envelope, event)

    def parse(self, provider, raw: bytes):
        return self.registry.get(provider).verifier.parse(raw)

    def process(self, envelope) -> tuple[dict, int]:
        try:
            result = self.reconcile(envelope.provider, envelope)
            status = result.status
        except UnresolvedAccount as e:
            logger.warning(str(e), extra={"event_id": envelope.event_id})
            status = ReconcileStatus.UNRESOLVED
            error = e
        except StorageFailure as e:
            logger.error(
                f"Storage failure reconciling {envelope.provider}:{envelope.event_id}",
                exc_info=True,
            )
            status = ReconcileStatus.DEAD_LETTERED
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {envelope.provider}:{envelope.event_id}")
            status = ReconcileStatus.DEAD_LETTERED
            error = e
        else:
            return {"received": True, "status": status.value}, 200

        try:
            self.dead_letters.record(envelope, error)
        except StorageFailure:
            # Nothing durable was captured; let the provider redeliver
            return {"error": "storage_unavailable"}, 503

        return {"received": True, "status": status.value}, 200
