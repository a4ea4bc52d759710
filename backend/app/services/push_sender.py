import logging
import os
from threading import Lock
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# firebase_admin.messaging errors meaning the device token will never work again.
STALE_TOKEN_ERRORS = ("UnregisteredError", "SenderIdMismatchError")


class PushSender:
    """Firebase Cloud Messaging fan-out. A no-op until credentials are configured.

    ``urgent`` pushes (SOS and other safety alerts) go out with high Android and
    APNs priority. Everything else uses the platform defaults.
    """

    def __init__(self, credentials_path: Optional[str] = None, messaging: Any = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._messaging = messaging
        self._initialized = messaging is not None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._messaging is not None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if not self._initialized:
                self._messaging = self._load_messaging()
                self._initialized = True

    def _load_messaging(self) -> Any:
        credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
        if not credentials_path:
            logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
            return None
        try:
            import firebase_admin
            from firebase_admin import credentials, messaging

            if not firebase_admin._apps:  # pylint: disable=protected-access
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        except Exception:
            logger.exception("Push sender disabled: Firebase init from %s failed", credentials_path)
            return None
        logger.info("Push sender initialized")
        return messaging

    def _build_message(self, tokens: List[str], title: str, body: str, data: Dict[str, Any], urgent: bool) -> Any:
        messaging = self._messaging
        options: Dict[str, Any] = {}
        if urgent:
            options["android"] = messaging.AndroidConfig(priority="high")
            options["apns"] = messaging.APNSConfig(
                headers={"apns-priority": "10"},
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
            )
        return messaging.MulticastMessage(
            notification=messaging.Notification(title=title, body=body),
            tokens=tokens,
            # FCM data payloads only carry strings.
            data={key: "" if value is None else str(value) for key, value in data.items()},
            **options,
        )

    def _is_stale(self, exc: Optional[BaseException]) -> bool:
        if exc is None:
            return False
        stale_types = tuple(
            getattr(self._messaging, name) for name in STALE_TOKEN_ERRORS if hasattr(self._messaging, name)
        )
        if stale_types and isinstance(exc, stale_types):
            return True
        return "registration token" in str(exc).lower()

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, Any],
        urgent: bool = False,
    ) -> List[str]:
        """Deliver to every token and return the ones FCM reports as stale."""
        self._ensure_initialized()
        if self._messaging is None or not tokens:
            return []
        try:
            batch = self._messaging.send_each_for_multicast(self._build_message(tokens, title, body, data, urgent))
        except Exception:
            logger.exception("Push send failed for %d tokens (%s)", len(tokens), title)
            return []
        if batch.failure_count:
            logger.warning("Push delivery failed for %d of %d tokens", batch.failure_count, len(tokens))
        return [
            token
            for token, response in zip(tokens, batch.responses)
            if not response.success and self._is_stale(response.exception)
        ]


push_sender = PushSender()
