"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
¿Por qué separar Models y Schemas?
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic) → definen qué DATOS acepta/devuelve la API

Convención de nombres:
  XxxRequest / XxxCreate → lo que envía el cliente
  XxxUpdate → actualización PARCIAL: cada campo opcional está listado
              explícitamente; nunca se mezclan claves arbitrarias del cliente
  XxxResponse / XxxSummary → lo que devuelve la API
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    """Datos para registrar un usuario nuevo"""
    model_config = {"str_strip_whitespace": True}

    username: str = Field(min_length=3, max_length=20)
    password: str = Field(min_length=6, max_length=72, description="Entre 6 y 72 caracteres")
    nickname: str = Field(min_length=2, max_length=10)

class UserLogin(BaseModel):
    """Datos para iniciar sesión"""
    username: str
    password: str

class UserResponse(BaseModel):
    """Datos completos del usuario (solo para él mismo)"""
    id: int
    username: str
    nickname: str
    unique_code: str
    linked_user_id: Optional[int] = None
    profile_image: Optional[str] = None
    created_at: datetime
    last_login_at: datetime
    model_config = {"from_attributes": True}

class UserSummary(BaseModel):
    """Datos públicos de un usuario (búsqueda por código, compañero vinculado)"""
    id: int
    nickname: str
    unique_code: str
    profile_image: Optional[str] = None
    created_at: datetime
    model_config = {"from_attributes": True}

class UserBrief(BaseModel):
    """Lo mínimo para pintar el remitente de un mensaje"""
    id: int
    nickname: str
    profile_image: Optional[str] = None
    model_config = {"from_attributes": True}

class TokenResponse(BaseModel):
    """Respuesta con el token JWT"""
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class MeResponse(BaseModel):
    user: UserResponse
    linked_user: Optional[UserSummary] = None


# =============================================================================
# ===================== USERS / LINKING =======================================
# =============================================================================

class LinkRequest(BaseModel):
    model_config = {"str_strip_whitespace": True}

    unique_code: str = Field(min_length=1, max_length=6)

class LinkResponse(BaseModel):
    linked_user: UserSummary

class ProfileImageUpdate(BaseModel):
    profile_image: str = Field(min_length=1, max_length=500)

class NicknameUpdate(BaseModel):
    model_config = {"str_strip_whitespace": True}

    nickname: str = Field(min_length=2, max_length=10)


# =============================================================================
# ===================== QUESTS ================================================
# =============================================================================

class QuestItemIn(BaseModel):
    """Una misión tal como la envía el cliente. El id lo elige el cliente."""
    model_config = {"str_strip_whitespace": True}

    id: str = Field(min_length=1, max_length=50)
    title: str = Field(min_length=1, max_length=100)
    completed: bool = False
    photo: Optional[str] = Field(default=None, max_length=500)

class QuestSetUpdate(BaseModel):
    """
    Actualización parcial del set de un día.
    Solo se aplican los campos que el cliente ENVÍA (model_fields_set):
      - quests → reemplaza la lista entera
      - encouragement_message → null lo borra
    completion_rate NO está aquí: se recalcula siempre en el servidor.
    """
    quests: Optional[list[QuestItemIn]] = None
    encouragement_message: Optional[str] = Field(default=None, max_length=200)

class QuestItemResponse(BaseModel):
    id: str = Field(validation_alias="quest_key")
    title: str
    completed: bool
    completed_at: Optional[datetime] = None
    photo: Optional[str] = None
    model_config = {"from_attributes": True}

class QuestSetResponse(BaseModel):
    id: int
    user_id: int
    date: str
    quests: list[QuestItemResponse] = Field(default=[], validation_alias="items")
    encouragement_message: Optional[str] = None
    completion_rate: int
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}

class LinkedQuestResponse(BaseModel):
    quest_set: QuestSetResponse
    linked_user: UserBrief


# =============================================================================
# ===================== MESSAGES ==============================================
# =============================================================================

class MessageCreate(BaseModel):
    model_config = {"str_strip_whitespace": True}

    to_user_id: int
    message: str = Field(min_length=1, max_length=200)
    quest_date: str

class MessageResponse(BaseModel):
    id: int
    from_user_id: int
    to_user_id: int
    message: str
    quest_date: str
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime
    from_user: Optional[UserBrief] = None
    to_user: Optional[UserBrief] = None
    model_config = {"from_attributes": True}

class UnreadCountResponse(BaseModel):
    unread_count: int
