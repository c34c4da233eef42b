"""Push notifications through Firebase Cloud Messaging."""

from dataclasses import dataclass, field
from typing import Callable, Optional

import firebase_admin
import structlog
from firebase_admin import credentials, exceptions, messaging
from sqlalchemy.orm import Session

from database import DeviceToken
from errors import DataIntegrityError, ExternalServiceError, InvalidRequestError

logger = structlog.get_logger(__name__)

APP_NAME = "finance-chat"

# Errors FCM returns for tokens that will never work again
INVALID_TOKEN_ERRORS = (
    messaging.UnregisteredError,
    messaging.SenderIdMismatchError,
    exceptions.InvalidArgumentError,
)


@dataclass
class PushResult:
    success_count: int = 0
    failure_count: int = 0
    removed_tokens: list = field(default_factory=list)


def register_token(db: Session, user_id: str, token: str) -> DeviceToken:
    """A user keeps a single registration: older tokens are replaced."""
    if not token:
        raise InvalidRequestError("token is required")
    db.query(DeviceToken).filter(DeviceToken.user_id == user_id).delete()
    device = DeviceToken(user_id=user_id, token=token)
    db.add(device)
    db.commit()
    db.refresh(device)
    logger.info("device_token_registered", user_id=user_id)
    return device


def user_tokens(db: Session, user_id: str) -> list[str]:
    return [row.token for row in db.query(DeviceToken).filter(DeviceToken.user_id == user_id).all()]


def build_message(tokens: list[str], title: str, body: str, data: Optional[dict] = None) -> messaging.MulticastMessage:
    # FCM only accepts string data values
    payload = {str(k): str(v) for k, v in (data or {}).items()}
    return messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(title=title, body=body),
        data=payload,
        webpush=messaging.WebpushConfig(
            notification=messaging.WebpushNotification(
                title=title,
                body=body,
                icon="/favicon.ico",
                badge="/favicon.ico",
                actions=[messaging.WebpushNotificationAction(action="open", title="Open App")],
            ),
        ),
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default"),
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1)),
        ),
    )


class PushService:
    def __init__(self, send_multicast: Callable):
        self._send_multicast = send_multicast

    @classmethod
    def from_credentials(cls, credentials_path: str) -> "PushService":
        try:
            app = firebase_admin.get_app(APP_NAME)
        except ValueError:
            app = firebase_admin.initialize_app(credentials.Certificate(credentials_path), name=APP_NAME)
        return cls(lambda message: messaging.send_each_for_multicast(message, app=app))

    def send(self, db: Session, tokens: list[str], title: str, body: str, data: Optional[dict] = None) -> PushResult:
        if not tokens:
            return PushResult()

        try:
            batch = self._send_multicast(build_message(tokens, title, body, data))
        except exceptions.FirebaseError as e:
            raise ExternalServiceError(f"Push delivery failed: {e}") from e

        result = PushResult(success_count=batch.success_count, failure_count=batch.failure_count)
        for token, response in zip(tokens, batch.responses):
            if response.success:
                continue
            if isinstance(response.exception, INVALID_TOKEN_ERRORS):
                result.removed_tokens.append(token)
            else:
                logger.warning("push_failed", error=str(response.exception))

        if result.removed_tokens:
            db.query(DeviceToken).filter(DeviceToken.token.in_(result.removed_tokens)).delete(synchronize_session=False)
            db.commit()
            logger.info("device_tokens_removed", count=len(result.removed_tokens))

        logger.info("push_sent", success=result.success_count, failure=result.failure_count)
        return result

    def notify_user(self, db: Session, user_id: str, title: str, body: str, data: Optional[dict] = None) -> PushResult:
        tokens = user_tokens(db, user_id)
        if not tokens:
            logger.info("no_device_tokens", user_id=user_id)
            return PushResult()
        return self.send(db, tokens, title, body, data)


def notify_new_transaction(db: Session, push: PushService, record: dict) -> PushResult:
    """Tell a user's devices about a transaction row that was just inserted."""
    user_id = record.get("user_id")
    tokens = user_tokens(db, user_id) if user_id else []
    if not tokens:
        raise DataIntegrityError("No device token found for user")

    amount = abs(float(record.get("amount") or 0))
    label = "Expense" if record.get("type") == "expense" else "Income"
    return push.send(
        db,
        tokens,
        title="New Transaction",
        body=f"{label}: ${amount:,.2f}",
        data={"transactionId": str(record.get("id"))},
    )
