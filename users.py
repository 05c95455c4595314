"""
=============================================================================
USERS.PY — Identidades: registro, login, búsqueda por código, perfil
=============================================================================
Cada usuario tiene un unique_code público de 6 caracteres (A-Z, 0-9).
Es lo que se comparte para vincularse con otra persona.

Generación del código:
  La garantía REAL de unicidad es el índice único de la BD.
  El bucle de reintentos solo evita chocar con él la mayoría de las veces,
  y está ACOTADO: tras MAX_CODE_ATTEMPTS intentos → GenerationExhaustedError.
"""

import logging
import random
import string
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import hash_password, verify_password
from database import commit_or_conflict
from errors import (
    AuthenticationError, ConflictError, GenerationExhaustedError,
    NotFoundError, NotLinkedError, SelfReferenceError
)
from models import User

logger = logging.getLogger("dailyquest.users")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10


def generate_unique_code() -> str:
    """Un código candidato. Puede existir ya: quien llama lo comprueba."""
    return "".join(random.choices(CODE_ALPHABET, k=CODE_LENGTH))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


# =============================================================================
# ===================== REGISTRO / LOGIN ======================================
# =============================================================================

def _username_taken(db: Session, username: str) -> bool:
    return db.query(User.id).filter(User.username == username).first() is not None


def register_user(db: Session, username: str, password: str, nickname: str) -> User:
    """
    Crea un usuario nuevo con un unique_code libre.

    Errores:
      - ConflictError si el username ya existe
      - GenerationExhaustedError si no se encuentra código libre
    """
    if _username_taken(db, username):
        raise ConflictError("Ya existe una cuenta con este nombre de usuario")

    password_hash = hash_password(password)

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_unique_code()
        if db.query(User.id).filter(User.unique_code == code).first():
            continue

        user = User(
            username=username,
            password_hash=password_hash,
            nickname=nickname,
            unique_code=code
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # Otra petición se llevó el username o el código entre la comprobación y el insert
            db.rollback()
            if _username_taken(db, username):
                raise ConflictError("Ya existe una cuenta con este nombre de usuario")
            logger.warning(f"⚠️ Código {code} ocupado al insertar (intento {attempt})")
            continue

        logger.info(f"👤 Nuevo usuario registrado: {user.nickname} ({user.username}, código {user.unique_code})")
        return user

    logger.error(f"❌ Sin código libre tras {MAX_CODE_ATTEMPTS} intentos para {username}")
    raise GenerationExhaustedError("No se pudo generar un código único, inténtalo más tarde")


def authenticate_user(db: Session, username: str, password: str) -> User:
    """Verifica credenciales y actualiza last_login_at."""
    user = db.query(User).filter(User.username == username).first()

    if not user or not verify_password(password, user.password_hash):
        raise AuthenticationError("Usuario o contraseña incorrectos")

    user.last_login_at = datetime.utcnow()
    commit_or_conflict(db)
    return user


# =============================================================================
# ===================== CONSULTAS =============================================
# =============================================================================

def find_by_code(db: Session, requester: User, code: str) -> User:
    """Busca a otro usuario por su código. Buscar el propio → SelfReferenceError."""
    code = normalize_code(code)
    if code == requester.unique_code:
        raise SelfReferenceError("No puedes buscar tu propio código")

    user = db.query(User).filter(User.unique_code == code).first()
    if user is None:
        raise NotFoundError("No existe ningún usuario con ese código")
    return user


def get_linked_user(db: Session, user: User) -> User:
    """
    Devuelve el compañero vinculado.
    Si el registro del compañero ya no existe, limpia el puntero colgante.
    """
    if user.linked_user_id is None:
        raise NotLinkedError()

    peer = db.query(User).filter(User.id == user.linked_user_id).first()
    if peer is None:
        logger.warning(f"⚠️ Usuario {user.id} apuntaba a {user.linked_user_id}, que ya no existe: se limpia")
        user.linked_user_id = None
        commit_or_conflict(db)
        raise NotFoundError("No se encuentra el usuario vinculado")
    return peer


# =============================================================================
# ===================== PERFIL ================================================
# =============================================================================

def update_nickname(db: Session, user: User, nickname: str) -> User:
    user.nickname = nickname
    commit_or_conflict(db)
    return user


def update_profile_image(db: Session, user: User, profile_image: str) -> User:
    user.profile_image = profile_image
    commit_or_conflict(db)
    return user
