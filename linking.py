"""
=============================================================================
LINKING.PY — Vinculación entre Usuarios
=============================================================================
Este módulo es el ÚNICO que escribe linked_user_id.

Invariante:
  linked_user_id es NULL, o apunta a un usuario cuyo linked_user_id apunta
  de vuelta. Nunca queda en un solo sentido fuera de una transacción.

¿Cómo se garantiza?
  1. Las dos escrituras (A → B y B → A) van en UN solo commit.
  2. Cada fila lleva version_id: si otra petición vinculó a B mientras tanto,
     el commit falla con StaleDataError y se deshace entero.
  3. Después del commit se relee el par. Si no es mutuo →
     FatalInconsistencyError (CRITICAL en el log, reparación manual).
"""

import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import (
    AlreadyLinkedError, ConflictError, FatalInconsistencyError, NotFoundError,
    NotLinkedError, SelfLinkError
)
from database import commit_or_conflict
from models import User
from users import normalize_code

logger = logging.getLogger("dailyquest.linking")


def link_users(db: Session, requester: User, target_code: str) -> User:
    """
    Vincula al usuario con el dueño de target_code. Devuelve el compañero.

    Errores:
      - SelfLinkError si el código es el suyo
      - NotFoundError si nadie tiene ese código
      - AlreadyLinkedError si alguno de los dos ya tiene compañero
      - ConflictError si otra petición tocó a alguno de los dos a la vez (reintentar)
    """
    code = normalize_code(target_code)
    if code == requester.unique_code:
        raise SelfLinkError()

    target = db.query(User).filter(User.unique_code == code).first()
    if target is None:
        raise NotFoundError("No existe ningún usuario con ese código")

    if requester.linked_user_id is not None:
        raise AlreadyLinkedError("Ya tienes un usuario vinculado. Desvincúlalo primero")
    if target.linked_user_id is not None:
        raise AlreadyLinkedError("Ese usuario ya está vinculado con otra persona")

    requester.linked_user_id = target.id
    target.linked_user_id = requester.id

    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        _raise_link_race(db, requester.id, target.id)

    ensure_mutual_link(db, requester.id, target.id)
    logger.info(f"🔗 Vinculados: {requester.username} ↔ {target.username}")
    return target


def _raise_link_race(db: Session, requester_id: int, target_id: int) -> None:
    """
    Otra petición guardó a uno de los dos mientras se vinculaba.
    Solo es AlreadyLinkedError si ahora alguno tiene compañero; si fue otro
    cambio (nickname, foto, login...) es un ConflictError normal y se puede reintentar.
    """
    current = db.query(User).populate_existing().filter(User.id.in_([requester_id, target_id])).all()
    if any(user.linked_user_id is not None for user in current):
        raise AlreadyLinkedError("Uno de los dos usuarios se vinculó con otra persona mientras tanto")
    raise ConflictError("Los datos cambiaron mientras se vinculaba, inténtalo de nuevo")


def unlink_user(db: Session, requester: User) -> None:
    """
    Deshace el vínculo del usuario.
    El compañero se limpia también si su registro existe y apunta de vuelta;
    si no existe, el usuario se desvincula igualmente.
    """
    if requester.linked_user_id is None:
        raise NotLinkedError()

    peer_id = requester.linked_user_id
    peer = db.query(User).populate_existing().filter(User.id == peer_id).first()

    if peer is None:
        logger.warning(f"⚠️ Desvinculando {requester.id}: el compañero {peer_id} ya no existe")
    elif peer.linked_user_id == requester.id:
        peer.linked_user_id = None
    else:
        # El compañero apunta a otra persona: no se toca ese otro vínculo
        logger.warning(
            f"⚠️ Desvinculando {requester.id}: el compañero {peer_id} apuntaba a {peer.linked_user_id}"
        )

    requester.linked_user_id = None
    commit_or_conflict(db)
    logger.info(f"✂️ Vínculo deshecho: {requester.id} ✕ {peer_id}")


def ensure_mutual_link(db: Session, user_id: int, peer_id: int) -> None:
    """
    Relee el par desde la BD y comprueba que se apuntan mutuamente.
    Si no → FatalInconsistencyError (los datos necesitan reparación manual).
    """
    user = db.query(User).populate_existing().filter(User.id == user_id).first()
    peer = db.query(User).populate_existing().filter(User.id == peer_id).first()

    if (
        user is not None and peer is not None
        and user.linked_user_id == peer.id
        and peer.linked_user_id == user.id
    ):
        return

    logger.critical(
        f"🚨 INCONSISTENCIA en vínculo {user_id} ↔ {peer_id}: "
        f"{user_id} → {user.linked_user_id if user else 'N/A'}, "
        f"{peer_id} → {peer.linked_user_id if peer else 'N/A'}. Requiere reparación manual."
    )
    raise FatalInconsistencyError(
        "El vínculo quedó en un estado inconsistente", user_ids=(user_id, peer_id)
    )
