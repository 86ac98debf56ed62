class ReconciliationError(Exception):
    pass


class UnknownProvider(ReconciliationError):
    pass


class InvalidSignature(ReconciliationError):
    """Webhook payload failed authentication. Rejected with a 4xx, body never processed."""
    pass


class VerifierUnavailable(ReconciliationError):
    """The verifier itself could not run (provider verification API down, misconfiguration)."""
    pass


class UnresolvedAccount(ReconciliationError):
    def __init__(self, provider, subscription_ref=None, customer_ref=None):
        self.provider = provider
        self.subscription_ref = subscription_ref
        self.customer_ref = customer_ref
        super().__init__(
            f"No account for {provider} subscription={subscription_ref} customer={customer_ref}"
        )


class StorageFailure(ReconciliationError):
    pass


class LockTimeout(StorageFailure):
    pass


class DuplicateEvent(ReconciliationError):
    def __init__(self, provider, event_id):
        self.provider = provider
        self.event_id = event_id
        super().__init__(f"{provider} event {event_id} already processed")
