"""
=============================================================================
QUESTS.PY — Ciclo de Vida de las Misiones Diarias
=============================================================================
Gestiona:
  - Crear (la primera vez) u obtener el set de misiones de hoy
  - Consultar un día concreto o un mes entero
  - Reemplazar misiones / mensaje de ánimo (actualización parcial)
  - Marcar y desmarcar una misión (toggle)
  - Ver las misiones del compañero vinculado

Fechas:
  Siempre strings "YYYY-MM-DD". "Hoy" se calcula en APP_TIMEZONE (por defecto UTC).

completion_rate:
  Lo recalcula models._recompute_completion_rates en CADA flush.
  Aquí nunca se copia de lo que envía el cliente.
"""

import calendar
import logging
import os
import re
from datetime import datetime

import pytz
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import access
from database import commit_or_conflict
from errors import InvalidDateError, NotFoundError, ValidationError
from models import QuestItem, QuestSet, User
from schemas import QuestSetUpdate

logger = logging.getLogger("dailyquest.quests")

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "UTC")

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Plantilla de misiones para un día nuevo: ids "1".."4", todas sin completar
DEFAULT_QUESTS = [
    {"id": "1", "title": "Levantarse a las 04:30"},
    {"id": "2", "title": "Caminar 15 minutos al despertar"},
    {"id": "3", "title": "Beber 8 vasos de agua"},
    {"id": "4", "title": "Leer 30 minutos"},
]


# =============================================================================
# ===================== FECHAS ================================================
# =============================================================================

def today_str() -> str:
    """La fecha de hoy en APP_TIMEZONE, como "YYYY-MM-DD"."""
    return datetime.now(pytz.timezone(APP_TIMEZONE)).strftime("%Y-%m-%d")


def validate_date(value: str) -> str:
    """Acepta solo "YYYY-MM-DD" y fechas reales del calendario."""
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise InvalidDateError()
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise InvalidDateError()
    return value


def month_bounds(year: int, month: int) -> tuple[str, str]:
    """Primer y último día REAL del mes (28, 29, 30 o 31)."""
    if not 1 <= month <= 12 or not 1 <= year <= 9999:
        raise ValidationError("Año o mes incorrecto")
    last_day = calendar.monthrange(year, month)[1]
    return f"{year:04d}-{month:02d}-01", f"{year:04d}-{month:02d}-{last_day:02d}"


# =============================================================================
# ===================== CONSULTAS =============================================
# =============================================================================

def _find(db: Session, user_id: int, day: str) -> QuestSet | None:
    return db.query(QuestSet).filter(
        QuestSet.user_id == user_id,
        QuestSet.date == day
    ).first()


def _default_items() -> list[QuestItem]:
    return [
        QuestItem(quest_key=q["id"], title=q["title"], position=i, completed=False)
        for i, q in enumerate(DEFAULT_QUESTS)
    ]


def get_or_create(db: Session, user_id: int, day: str) -> QuestSet:
    """
    Devuelve el set (user_id, day); si no existe lo crea con la plantilla.
    Si dos peticiones lo crean a la vez, el índice único frena a la segunda
    y esta devuelve el que ya se guardó.
    """
    quest_set = _find(db, user_id, day)
    if quest_set:
        return quest_set

    quest_set = QuestSet(user_id=user_id, date=day, items=_default_items())
    db.add(quest_set)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        quest_set = _find(db, user_id, day)
        if quest_set is None:
            raise
        return quest_set

    logger.info(f"📋 Misiones creadas para usuario {user_id} ({day})")
    return quest_set


def get_or_create_today(db: Session, user_id: int) -> QuestSet:
    return get_or_create(db, user_id, today_str())


def get_by_date(db: Session, user_id: int, day: str) -> QuestSet:
    validate_date(day)
    quest_set = _find(db, user_id, day)
    if quest_set is None:
        raise NotFoundError("No hay misiones para esa fecha")
    return quest_set


def list_month(db: Session, user_id: int, year: int, month: int) -> list[QuestSet]:
    """Todos los sets del mes, ordenados por fecha ascendente."""
    start, end = month_bounds(year, month)
    return db.query(QuestSet).filter(
        QuestSet.user_id == user_id,
        QuestSet.date >= start,
        QuestSet.date <= end
    ).order_by(QuestSet.date).all()


def get_linked_peer_quest(db: Session, requester: User, day: str) -> tuple[QuestSet, User]:
    """Las misiones del compañero para ese día. Requiere vínculo mutuo."""
    validate_date(day)
    peer = access.require_linked_peer(db, requester)
    quest_set = _find(db, peer.id, day)
    if quest_set is None:
        raise NotFoundError("Tu compañero no tiene misiones para esa fecha")
    return quest_set, peer


# =============================================================================
# ===================== MODIFICACIONES ========================================
# =============================================================================

def replace_quests(db: Session, user_id: int, day: str, data: QuestSetUpdate) -> QuestSet:
    """
    Actualización parcial: solo se tocan los campos que el cliente envió.

    quests: reemplaza la lista. Las misiones que ya existían (mismo id)
    se actualizan en su fila y conservan completed_at si seguían completadas.
    """
    quest_set = get_by_date(db, user_id, day)
    sent = data.model_fields_set

    if "quests" in sent and data.quests is not None:
        keys = [q.id for q in data.quests]
        if len(keys) != len(set(keys)):
            raise ValidationError("Hay misiones con el mismo id")

        existing = {item.quest_key: item for item in quest_set.items}
        now = datetime.utcnow()
        new_items = []
        for position, q in enumerate(data.quests):
            item = existing.get(q.id) or QuestItem(quest_key=q.id)
            was_completed = bool(item.completed)
            item.title = q.title
            item.photo = q.photo
            item.position = position
            item.completed = q.completed
            if not q.completed:
                item.completed_at = None
            elif not was_completed or item.completed_at is None:
                item.completed_at = now
            new_items.append(item)
        quest_set.items = new_items

    if "encouragement_message" in sent:
        quest_set.encouragement_message = data.encouragement_message

    quest_set.updated_at = datetime.utcnow()
    commit_or_conflict(db)
    return quest_set


def toggle_quest(db: Session, user_id: int, day: str, quest_id: str) -> QuestSet:
    """
    Marca/desmarca una misión.
    Si el set o la misión no existen → NotFoundError y no se modifica nada.
    """
    quest_set = get_by_date(db, user_id, day)

    item = next((i for i in quest_set.items if i.quest_key == quest_id), None)
    if item is None:
        raise NotFoundError("Misión no encontrada")

    item.completed = not item.completed
    item.completed_at = datetime.utcnow() if item.completed else None

    commit_or_conflict(db)
    logger.info(
        f"{'✅' if item.completed else '↩️'} Misión {quest_id} de usuario {user_id} ({day}) "
        f"→ {quest_set.completion_rate}%"
    )
    return quest_set
