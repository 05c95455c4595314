"""
=============================================================================
MODELS.PY — Todos los Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla en la base de datos.
Cada atributo de la clase = una columna en esa tabla.

RELACIONES:
  User ←→ User (linked_user_id, vínculo simétrico entre DOS usuarios)
  User tiene muchos → QuestSets (uno por día)
  QuestSet tiene muchos → QuestItems (ordenados)
  User envía/recibe → Messages

  USER ─── linked_user_id ──→ USER
  ├── quest_sets[] ──→ items[]
  └── messages (from_user_id / to_user_id)

CONCURRENCIA:
  User y QuestSet llevan una columna version_id. SQLAlchemy la usa para
  "optimistic locking": cada UPDATE incluye WHERE version_id = <leída>.
  Si otra petición guardó antes, el UPDATE no toca ninguna fila y se lanza
  StaleDataError (los servicios lo convierten en ConflictError).
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Index, event
)
from sqlalchemy.orm import relationship, Session
from database import Base


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Datos básicos ──
    username = Column(String(20), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    nickname = Column(String(10), nullable=False)

    unique_code = Column(String(6), unique=True, nullable=False, index=True)
    # unique_code → código público de 6 caracteres (A-Z, 0-9) para vincularse

    # ── Vínculo ──
    linked_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # linked_user_id → el compañero. Siempre simétrico: si A apunta a B, B apunta a A.

    profile_image = Column(String(500), nullable=True)

    # ── Timestamps ──
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime, default=datetime.utcnow)

    version_id = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    quest_sets = relationship("QuestSet", back_populates="user")


# =============================================================================
# ===================== TABLA 2: QUEST_SETS ===================================
# =============================================================================
# Las misiones de UN usuario para UN día. Se crean la primera vez que se piden.

class QuestSet(Base):
    __tablename__ = "quest_sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    date = Column(String(10), nullable=False)
    # date → "YYYY-MM-DD" tal cual, nunca se convierte a Date

    encouragement_message = Column(String(200), nullable=True)

    completion_rate = Column(Integer, nullable=False, default=0)
    # completion_rate → 0..100. Lo calcula SIEMPRE el listener de abajo, nunca el cliente.

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    version_id = Column(Integer, nullable=False, default=1)

    # ── Restricción única: un set por usuario por día ──
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_quest_set_user_date"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    user = relationship("User", back_populates="quest_sets")
    items = relationship("QuestItem", back_populates="quest_set", cascade="all, delete-orphan",
                         order_by="QuestItem.position")


# =============================================================================
# ===================== TABLA 3: QUEST_ITEMS ==================================
# =============================================================================

class QuestItem(Base):
    __tablename__ = "quest_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quest_set_id = Column(Integer, ForeignKey("quest_sets.id"), nullable=False)

    quest_key = Column(String(50), nullable=False)
    # quest_key → el "id" que asigna el cliente ("1", "2"...). Único dentro del set.
    position = Column(Integer, nullable=False, default=0)

    title = Column(String(100), nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    # completed_at → NO nulo si y solo si completed
    photo = Column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("quest_set_id", "quest_key", name="uq_quest_item_key"),
    )

    quest_set = relationship("QuestSet", back_populates="items")


# =============================================================================
# ===================== TABLA 4: MESSAGES =====================================
# =============================================================================
# Mensajes de ánimo entre los dos usuarios vinculados.
# Inmutables salvo el paso de "no leído" a "leído".

class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    to_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    message = Column(String(200), nullable=False)
    quest_date = Column(String(10), nullable=False, index=True)

    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_messages_unread", "to_user_id", "is_read"),
    )

    from_user = relationship("User", foreign_keys=[from_user_id])
    to_user = relationship("User", foreign_keys=[to_user_id])


# =============================================================================
# ===================== TASA DE COMPLETADO ====================================
# =============================================================================

def calculate_completion_rate(items) -> int:
    """
    round(100 * completadas / total), redondeando .5 hacia arriba.
    Sin misiones → 0.
    """
    total = len(items)
    if total == 0:
        return 0
    completed = sum(1 for item in items if item.completed)
    return (200 * completed + total) // (2 * total)


@event.listens_for(Session, "before_flush")
def _recompute_completion_rates(session, flush_context, instances):
    """
    Antes de CADA flush recalcula completion_rate de todos los QuestSets tocados
    (directamente o a través de sus QuestItems). Así el invariante se cumple
    en todo guardado, venga de donde venga el cambio.
    """
    touched = set()
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, QuestSet):
            touched.add(obj)
        elif isinstance(obj, QuestItem) and obj.quest_set is not None:
            touched.add(obj.quest_set)

    for quest_set in touched:
        quest_set.completion_rate = calculate_completion_rate(quest_set.items)
        if quest_set.id is not None:
            quest_set.updated_at = datetime.utcnow()
