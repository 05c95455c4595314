"""
=============================================================================
ACCESS.PY — Política de Acceso entre Usuarios
=============================================================================
Una sola regla para TODO acceso cruzado (misiones o mensajes de otro):

  A puede tocar los datos de B  ⇔  A.linked_user_id == B.id
                                    Y B.linked_user_id == A.id

Se comprueba en el momento de la petición. No hay accesos transitivos,
delegados ni temporales.
"""

from typing import Optional

from sqlalchemy.orm import Session

from errors import ForbiddenError, NotLinkedError
from models import Message, User


def is_mutual_link(user: User, other: Optional[User]) -> bool:
    return (
        other is not None
        and user.linked_user_id == other.id
        and other.linked_user_id == user.id
    )


def linked_peer(db: Session, user: User) -> Optional[User]:
    """El compañero si el vínculo es mutuo; None en cualquier otro caso."""
    if user.linked_user_id is None:
        return None
    peer = db.query(User).populate_existing().filter(User.id == user.linked_user_id).first()
    return peer if is_mutual_link(user, peer) else None


def require_linked_peer(db: Session, user: User) -> User:
    """
    Como linked_peer, pero con errores:
      - NotLinkedError si no tiene compañero
      - ForbiddenError si el vínculo no es mutuo
    """
    if user.linked_user_id is None:
        raise NotLinkedError()
    peer = linked_peer(db, user)
    if peer is None:
        raise ForbiddenError("El vínculo con ese usuario no es válido")
    return peer


def authorize_peer(db: Session, requester: User, target_user_id: int) -> User:
    """Permite actuar sobre target_user_id solo si es el compañero actual (y mutuo)."""
    if requester.linked_user_id is None or requester.linked_user_id != target_user_id:
        raise ForbiddenError("Solo puedes interactuar con tu usuario vinculado")
    peer = linked_peer(db, requester)
    if peer is None:
        raise ForbiddenError("Solo puedes interactuar con tu usuario vinculado")
    return peer


def authorize_mark_read(requester: User, message: Message) -> None:
    """Solo el destinatario puede marcar un mensaje como leído."""
    if message.to_user_id != requester.id:
        raise ForbiddenError("No tienes permiso para marcar este mensaje como leído")
