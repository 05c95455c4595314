"""
=============================================================================
MESSAGES.PY — Mensajes de Ánimo
=============================================================================
Mensajes cortos (1-200 caracteres) entre los DOS usuarios vinculados,
asociados a un día de misiones ("YYYY-MM-DD").

Reglas:
  - Solo se envían al compañero vinculado actual (vínculo mutuo)
  - Solo el destinatario los marca como leídos
  - Una vez creados, lo único que cambia es is_read / read_at
"""

import logging
from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

import access
from errors import NotFoundError, ValidationError
from models import Message, User
from quests import validate_date

logger = logging.getLogger("dailyquest.messages")

MAX_MESSAGE_LENGTH = 200
RECENT_LIMIT = 20


def _thread_filter(user_id: int, peer_id: int):
    """Mensajes en cualquiera de los dos sentidos entre user y peer."""
    return or_(
        and_(Message.from_user_id == user_id, Message.to_user_id == peer_id),
        and_(Message.from_user_id == peer_id, Message.to_user_id == user_id),
    )


def send_message(db: Session, sender: User, to_user_id: int, text: str, quest_date: str) -> Message:
    """
    Envía un mensaje al compañero.
    ForbiddenError si to_user_id no es el compañero actual (con vínculo mutuo).
    """
    text = (text or "").strip()
    if not 1 <= len(text) <= MAX_MESSAGE_LENGTH:
        raise ValidationError(f"El mensaje debe tener entre 1 y {MAX_MESSAGE_LENGTH} caracteres")
    validate_date(quest_date)

    access.authorize_peer(db, sender, to_user_id)

    message = Message(
        from_user_id=sender.id,
        to_user_id=to_user_id,
        message=text,
        quest_date=quest_date
    )
    db.add(message)
    db.commit()

    logger.info(f"💌 Mensaje {message.id}: {sender.id} → {to_user_id} ({quest_date})")
    return message


def list_for_day(db: Session, user: User, quest_date: str) -> list[Message]:
    """La conversación con el compañero de ese día, del más antiguo al más nuevo."""
    validate_date(quest_date)
    peer = access.require_linked_peer(db, user)

    return db.query(Message).options(
        joinedload(Message.from_user), joinedload(Message.to_user)
    ).filter(
        Message.quest_date == quest_date,
        _thread_filter(user.id, peer.id)
    ).order_by(Message.created_at, Message.id).all()


def mark_read(db: Session, message_id: int, requester: User) -> Message:
    """Marca como leído. Si ya lo estaba, no cambia read_at."""
    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        raise NotFoundError("Mensaje no encontrado")

    access.authorize_mark_read(requester, message)

    if not message.is_read:
        message.is_read = True
        message.read_at = datetime.utcnow()
        db.commit()
    return message


def unread_count(db: Session, user: User) -> int:
    """Mensajes sin leer del compañero actual. Sin vínculo mutuo → 0."""
    peer = access.linked_peer(db, user)
    if peer is None:
        return 0
    return db.query(Message).filter(
        Message.to_user_id == user.id,
        Message.from_user_id == peer.id,
        Message.is_read == False  # noqa: E712
    ).count()


def recent(db: Session, user: User, limit: int = RECENT_LIMIT) -> list[Message]:
    """Los últimos mensajes de la pareja, del más nuevo al más antiguo. Sin vínculo mutuo → []."""
    peer = access.linked_peer(db, user)
    if peer is None:
        return []
    return db.query(Message).options(
        joinedload(Message.from_user), joinedload(Message.to_user)
    ).filter(
        _thread_filter(user.id, peer.id)
    ).order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
