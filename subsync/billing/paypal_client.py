import json
import logging
import threading
import time

import requests

from subsync.errors import VerifierUnavailable

logger = logging.getLogger(__name__)

# Refresh the OAuth token this many seconds before PayPal says it expires
TOKEN_EXPIRY_MARGIN = 60


class PayPalClient:
    """
    Thin PayPal REST client: OAuth client-credentials token and webhook
    signature verification. Constructed once per app and injected.
    """

    def __init__(self, client_id, client_secret, base_url, timeout=5.0, session=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

        self._token = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, session=None):
        return cls(
            client_id=config["PAYPAL_CLIENT_ID"],
            client_secret=config["PAYPAL_CLIENT_SECRET"],
            base_url=config["PAYPAL_BASE_URL"],
            timeout=config.get("PAYPAL_TIMEOUT", 5.0),
            session=session,
        )

    def access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                response = self.session.post(
                    f"{self.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                token_data = response.json()
            except (requests.RequestException, ValueError) as e:
                logger.error(f"PayPal token request failed: {e}")
                raise VerifierUnavailable("PayPal OAuth token request failed") from e

            token = token_data.get("access_token")
            if not token:
                raise VerifierUnavailable("PayPal OAuth response carried no access_token")

            expires_in = int(token_data.get("expires_in", 0))
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            return token

    def verify_webhook_signature(self, webhook_id: str, transmission: dict, raw_body: bytes) -> bool:
        """
        Ask PayPal whether a delivery is authentic.

        The received body is spliced into the request verbatim as
        webhook_event; re-serializing it would change the bytes PayPal signed.
        """
        envelope = {
            "auth_algo": transmission["auth_algo"],
            "cert_url": transmission["cert_url"],
            "transmission_id": transmission["transmission_id"],
            "transmission_sig": transmission["transmission_sig"],
            "transmission_time": transmission["transmission_time"],
            "webhook_id": webhook_id,
        }
        head = json.dumps(envelope)[:-1]
        body = f'{head}, "webhook_event": '.encode() + raw_body + b"}"

        token = self.access_token()
        try:
            response = self.session.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                data=body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"PayPal verification API call failed: {e}")
            raise VerifierUnavailable("PayPal signature verification unavailable") from e

        status = result.get("verification_status")
        if status != "SUCCESS":
            logger.warning(
                f"PayPal webhook verification failed: {status}",
                extra={"transmission_id": transmission["transmission_id"]},
            )
            return False
        return True
