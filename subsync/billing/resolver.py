import logging

from sqlalchemy.exc import SQLAlchemyError

from subsync.billing.events import Activated
from subsync.errors import StorageFailure, UnresolvedAccount
from subsync.extensions import db
from subsync.models import Account, SubscriptionRecord

logger = logging.getLogger(__name__)

CUSTOMER_REF_COLUMNS = {
    "stripe": Account.stripe_customer_id,
    "paypal": Account.paypal_payer_id,
}


class AccountResolver:
    """
    Maps a normalized event to the account it belongs to.

    Order:
      1. checkout correlation id, only for the first Activated of a subscription
      2. the stored subscription record for the provider subscription id
      3. the account's stored provider customer reference
    """

    def resolve(self, provider: str, event) -> str:
        try:
            record = None
            if event.subscription_ref:
                record = (
                    SubscriptionRecord.query
                    .filter_by(provider=provider, provider_subscription_id=event.subscription_ref)
                    .first()
                )

            if isinstance(event, Activated) and record is None and event.correlation_id:
                account = db.session.get(Account, event.correlation_id)
                if account is not None:
                    return account.id
                logger.warning(
                    f"Correlation id {event.correlation_id} matches no account",
                    extra={"provider": provider, "subscription_ref": event.subscription_ref},
                )

            if record is not None:
                return record.account_id

            column = CUSTOMER_REF_COLUMNS.get(provider)
            if event.customer_ref and column is not None:
                account = Account.query.filter(column == event.customer_ref).first()
                if account is not None:
                    return account.id
        except SQLAlchemyError as e:
            raise StorageFailure(f"Account lookup failed for {provider} event") from e

        raise UnresolvedAccount(
            provider,
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
        )
