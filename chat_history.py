from typing import Optional

from sqlalchemy.orm import Session

from database import ChatMessage
from errors import InvalidRequestError

SENDERS = ("user", "assistant")


def save_message(
    db: Session,
    user_id: str,
    content: str,
    sender: str,
    thread_id: Optional[str] = None,
    file: Optional[dict] = None,
) -> ChatMessage:
    if sender not in SENDERS:
        raise InvalidRequestError(f"sender must be one of {SENDERS}")
    file = file or {}
    message = ChatMessage(
        user_id=user_id,
        content=content,
        sender=sender,
        thread_id=thread_id,
        file_url=file.get("url"),
        file_type=file.get("type"),
        file_name=file.get("name"),
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def list_messages(db: Session, user_id: str) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.user_id == user_id)
        .order_by(ChatMessage.timestamp.asc(), ChatMessage.id.asc())
        .all()
    )


def message_to_dict(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "content": message.content,
        "sender": message.sender,
        "thread_id": message.thread_id,
        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
        "file": {
            "url": message.file_url,
            "type": message.file_type,
            "name": message.file_name,
        } if message.file_url else None,
    }
