"""
=============================================================================
MAIN.PY — La API de DailyQuest
=============================================================================
Este archivo define TODOS los endpoints de la API REST y el WebSocket.

Organización por secciones:
  1. AUTH      → Registro, login, perfil propio, búsqueda por código
  2. USERS     → Vincular / desvincular, compañero, nickname, foto
  3. QUESTS    → Misiones de hoy, de un día, del mes, del compañero, toggle
  4. MESSAGES  → Mensajes de ánimo entre compañeros
  5. WEBSOCKET → Notificaciones en vivo

La lógica vive en los módulos de servicio (users, linking, quests, messages,
access). Aquí solo se traducen peticiones ↔ servicios y se avisa al compañero.
"""

import logging
import os
import traceback
import uuid
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import (
    FastAPI, Depends, Query, Request, BackgroundTasks, WebSocket, WebSocketDisconnect, status
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import access
import linking
import messages
import quests
import users
from auth import create_access_token, get_current_user, user_from_token
from database import get_db, init_db, SessionLocal
from errors import DailyQuestError, FatalInconsistencyError
from models import User
from notifications import ConnectionRegistry, NotificationRelay
from schemas import (
    UserRegister, UserLogin, UserResponse, UserSummary, UserBrief, TokenResponse, MeResponse,
    LinkRequest, LinkResponse, ProfileImageUpdate, NicknameUpdate,
    QuestSetUpdate, QuestSetResponse, LinkedQuestResponse,
    MessageCreate, MessageResponse, UnreadCountResponse
)
from scheduler import SCHEDULER_ENABLED, create_scheduler, start_scheduler, stop_scheduler

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("dailyquest.api")

CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Inicializar BD (crear tablas)
      2. Arrancar scheduler (auditoría de vínculos)
    Apagado:
      - Parar el scheduler
    """
    logger.info("🚀 Arrancando DailyQuest...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    if SCHEDULER_ENABLED:
        create_scheduler()
        start_scheduler()
    else:
        logger.warning("⚠️ Scheduler desactivado (SCHEDULER_ENABLED=0)")

    logger.info("🎉 DailyQuest operativo")

    yield

    logger.info("🛑 Apagando DailyQuest...")
    if SCHEDULER_ENABLED:
        stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="DailyQuest API",
    description="Misiones diarias compartidas entre dos usuarios vinculados",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CORS_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Registro de conexiones WebSocket: un objeto de la app, no un global del proceso.
# Los tests pueden sustituir app.state.relay por otro.
app.state.relay = NotificationRelay(ConnectionRegistry())


def get_relay(request: Request) -> NotificationRelay:
    return request.app.state.relay


# ─────────────────────────────────────────────────────────────────────────────
# MANEJO DE ERRORES
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(DailyQuestError)
async def domain_exception_handler(request: Request, exc: DailyQuestError):
    """Errores del dominio → JSON con su código y su "kind"."""
    if isinstance(exc, FatalInconsistencyError):
        logger.critical(
            f"🚨 Inconsistencia fatal en {request.url.path} (usuarios {exc.user_ids}): {exc.detail}"
        )
    elif exc.status_code >= 500:
        logger.error(f"❌ {exc.kind} en {request.url.path}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "kind": exc.kind, "detail": exc.detail}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Cualquier otro error → 500 genérico (el detalle va al log, no al cliente)"""
    logger.error(f"❌ Error no manejado en {request.url}: {exc}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "kind": "internal_error", "detail": "Error interno del servidor"}
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "DailyQuest",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: AUTH =======================================
# =============================================================================

@app.post("/api/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED,
          tags=["Auth"])
def register(data: UserRegister, db: Session = Depends(get_db)):
    """Registra un usuario nuevo y devuelve su token"""
    user = users.register_user(db, data.username, data.password, data.nickname)
    return TokenResponse(
        access_token=create_access_token(user.id, user.username),
        user=UserResponse.model_validate(user)
    )


@app.post("/api/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(data: UserLogin, db: Session = Depends(get_db)):
    """Inicia sesión con username y contraseña"""
    user = users.authenticate_user(db, data.username, data.password)
    return TokenResponse(
        access_token=create_access_token(user.id, user.username),
        user=UserResponse.model_validate(user)
    )


@app.get("/api/auth/me", response_model=MeResponse, tags=["Auth"])
def get_me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Datos del usuario autenticado y, si lo tiene, de su compañero"""
    linked = None
    if user.linked_user_id is not None:
        peer = db.query(User).filter(User.id == user.linked_user_id).first()
        if peer is not None:
            linked = UserSummary.model_validate(peer)
    return MeResponse(user=UserResponse.model_validate(user), linked_user=linked)


@app.get("/api/auth/search/{unique_code}", response_model=UserSummary, tags=["Auth"])
def search_by_code(unique_code: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Busca a otro usuario por su código de 6 caracteres"""
    return UserSummary.model_validate(users.find_by_code(db, user, unique_code))


# =============================================================================
# ===================== SECCIÓN 2: USERS ======================================
# =============================================================================

@app.post("/api/users/link", response_model=LinkResponse, tags=["Users"])
def link_user(data: LinkRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Vincula al usuario con el dueño del código (en los dos sentidos)"""
    peer = linking.link_users(db, user, data.unique_code)
    return LinkResponse(linked_user=UserSummary.model_validate(peer))


@app.delete("/api/users/unlink", tags=["Users"])
def unlink_user(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Deshace el vínculo (en los dos sentidos)"""
    linking.unlink_user(db, user)
    return {"success": True, "message": "Vínculo deshecho correctamente"}


@app.get("/api/users/linked", response_model=LinkResponse, tags=["Users"])
def get_linked_user(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Datos públicos del compañero vinculado"""
    peer = users.get_linked_user(db, user)
    return LinkResponse(linked_user=UserSummary.model_validate(peer))


@app.put("/api/users/profile-image", tags=["Users"])
def update_profile_image(
    data: ProfileImageUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Actualiza la referencia a la foto de perfil"""
    users.update_profile_image(db, user, data.profile_image)
    return {"success": True, "profile_image": user.profile_image}


@app.put("/api/users/nickname", tags=["Users"])
def update_nickname(data: NicknameUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Actualiza el nickname (2-10 caracteres)"""
    users.update_nickname(db, user, data.nickname)
    return {"success": True, "nickname": user.nickname}


# =============================================================================
# ===================== SECCIÓN 3: QUESTS =====================================
# =============================================================================
# Orden importante: las rutas fijas (/today, /linked, /month) van ANTES de /{date}

def _quest_update_payload(user: User, quest_set) -> dict:
    return {
        "user_id": user.id,
        "date": quest_set.date,
        "completion_rate": quest_set.completion_rate
    }


@app.get("/api/quests/today", response_model=QuestSetResponse, tags=["Quests"])
def get_today_quests(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Las misiones de hoy. Si no existen, se crean con la plantilla"""
    return QuestSetResponse.model_validate(quests.get_or_create_today(db, user.id))


@app.get("/api/quests/linked/{date}", response_model=LinkedQuestResponse, tags=["Quests"])
def get_linked_quests(date: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Las misiones del compañero para un día (requiere vínculo mutuo)"""
    quest_set, peer = quests.get_linked_peer_quest(db, user, date)
    return LinkedQuestResponse(
        quest_set=QuestSetResponse.model_validate(quest_set),
        linked_user=UserBrief.model_validate(peer)
    )


@app.get("/api/quests/month/{year}/{month}", response_model=list[QuestSetResponse], tags=["Quests"])
def get_month_quests(
    year: int, month: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Todos los días con misiones de un mes, por fecha ascendente"""
    return [QuestSetResponse.model_validate(q) for q in quests.list_month(db, user.id, year, month)]


@app.get("/api/quests/{date}", response_model=QuestSetResponse, tags=["Quests"])
def get_quests_by_date(date: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Las misiones de un día concreto"""
    return QuestSetResponse.model_validate(quests.get_by_date(db, user.id, date))


@app.put("/api/quests/{date}", response_model=QuestSetResponse, tags=["Quests"])
def update_quests(
    date: str,
    data: QuestSetUpdate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    relay: NotificationRelay = Depends(get_relay)
):
    """Reemplaza misiones y/o mensaje de ánimo (solo los campos enviados)"""
    quest_set = quests.replace_quests(db, user.id, date, data)
    response = QuestSetResponse.model_validate(quest_set)

    peer = access.linked_peer(db, user)
    if peer is not None:
        background_tasks.add_task(relay.notify_quest_update, peer.id, _quest_update_payload(user, quest_set))
    return response


@app.patch("/api/quests/{date}/toggle/{quest_id}", response_model=QuestSetResponse, tags=["Quests"])
def toggle_quest(
    date: str,
    quest_id: str,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    relay: NotificationRelay = Depends(get_relay)
):
    """Marca o desmarca una misión"""
    quest_set = quests.toggle_quest(db, user.id, date, quest_id)
    response = QuestSetResponse.model_validate(quest_set)

    peer = access.linked_peer(db, user)
    if peer is not None:
        background_tasks.add_task(relay.notify_quest_update, peer.id, _quest_update_payload(user, quest_set))
    return response


# =============================================================================
# ===================== SECCIÓN 4: MESSAGES ===================================
# =============================================================================

@app.post("/api/messages/send", response_model=MessageResponse, status_code=status.HTTP_201_CREATED,
          tags=["Messages"])
def send_message(
    data: MessageCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    relay: NotificationRelay = Depends(get_relay)
):
    """Envía un mensaje de ánimo al compañero"""
    message = messages.send_message(db, user, data.to_user_id, data.message, data.quest_date)
    response = MessageResponse.model_validate(message)

    background_tasks.add_task(relay.notify_encouragement, message.to_user_id, {
        "message_id": message.id,
        "from_user_id": message.from_user_id,
        "message": message.message,
        "quest_date": message.quest_date
    })
    return response


@app.get("/api/messages/unread/count", response_model=UnreadCountResponse, tags=["Messages"])
def get_unread_count(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Cuántos mensajes del compañero quedan por leer"""
    return UnreadCountResponse(unread_count=messages.unread_count(db, user))


@app.get("/api/messages/recent", response_model=list[MessageResponse], tags=["Messages"])
def get_recent_messages(
    limit: int = Query(default=messages.RECENT_LIMIT, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Últimos mensajes de la pareja (los más nuevos primero)"""
    return [MessageResponse.model_validate(m) for m in messages.recent(db, user, limit)]


@app.get("/api/messages/{quest_date}", response_model=list[MessageResponse], tags=["Messages"])
def get_messages_for_day(quest_date: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Mensajes de la pareja para un día de misiones"""
    return [MessageResponse.model_validate(m) for m in messages.list_for_day(db, user, quest_date)]


@app.patch("/api/messages/{message_id}/read", response_model=MessageResponse, tags=["Messages"])
def mark_message_read(message_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Marca un mensaje recibido como leído"""
    return MessageResponse.model_validate(messages.mark_read(db, message_id, user))


# =============================================================================
# ===================== SECCIÓN 5: WEBSOCKET ==================================
# =============================================================================
# Conexión: /ws?token=<JWT>
# El cliente puede enviar:
#   {"event": "send_encouragement", "message": "¡Ánimo!"}
#   {"event": "quest_updated", "date": "2024-05-01"}
# y ambos se reenvían SOLO a su compañero vinculado actual.

def _user_id_for_token(token: str) -> int | None:
    db = SessionLocal()
    try:
        user = user_from_token(db, token) if token else None
        return user.id if user else None
    finally:
        db.close()


def _peer_id_for(user_id: int) -> int | None:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == user_id).first()
        peer = access.linked_peer(db, user) if user else None
        return peer.id if peer else None
    finally:
        db.close()


async def _send_socket_error(websocket: WebSocket, kind: str, detail: str):
    await websocket.send_json({"event": "error", "data": {"kind": kind, "detail": detail}})


async def _handle_socket_event(websocket: WebSocket, relay: NotificationRelay, user_id: int, data):
    event = data.get("event") if isinstance(data, dict) else None

    if event not in ("send_encouragement", "quest_updated"):
        await _send_socket_error(websocket, "validation_error", f"Evento desconocido: {event}")
        return

    peer_id = await run_in_threadpool(_peer_id_for, user_id)
    if peer_id is None:
        await _send_socket_error(websocket, "not_linked", "No tienes ningún usuario vinculado")
        return

    if event == "send_encouragement":
        text = str(data.get("message") or "").strip()
        if not 1 <= len(text) <= messages.MAX_MESSAGE_LENGTH:
            await _send_socket_error(websocket, "validation_error", "El mensaje debe tener entre 1 y 200 caracteres")
            return
        await relay.notify_encouragement(peer_id, {"from_user_id": user_id, "message": text})
    else:
        await relay.notify_quest_update(peer_id, {"user_id": user_id, "date": data.get("date")})


@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: str = ""):
    relay: NotificationRelay = websocket.app.state.relay

    # Las consultas a la BD son síncronas: van al threadpool para no bloquear el relay
    user_id = await run_in_threadpool(_user_id_for_token, token)
    if user_id is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex

    try:
        relay.register(connection_id, user_id, websocket)
        await websocket.send_json({
            "event": "authenticated",
            "data": {"user_id": user_id, "connection_id": connection_id}
        })

        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await _send_socket_error(websocket, "validation_error", "JSON inválido")
                continue
            await _handle_socket_event(websocket, relay, user_id, data)
    except WebSocketDisconnect:
        pass
    finally:
        relay.unregister(connection_id)
