"""
=============================================================================
SCHEDULER.PY — Tareas Automáticas
=============================================================================
Tarea nocturna de auditoría de vínculos:

  Recorre todos los usuarios con linked_user_id y comprueba que el
  compañero existe y apunta de vuelta. Cada vínculo roto se registra como
  CRITICAL: son datos que hay que reparar A MANO. La tarea NO los arregla.

Usa APScheduler con CronTrigger. Se arranca y para desde el lifespan de main.py.
"""

import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from database import SessionLocal
from models import User
from quests import APP_TIMEZONE

logger = logging.getLogger("dailyquest.scheduler")

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "1") == "1"

scheduler: AsyncIOScheduler = None


# =============================================================================
# ===================== AUDITORÍA DE VÍNCULOS =================================
# =============================================================================

def find_broken_links(db: Session) -> list[tuple[int, int | None]]:
    """
    Devuelve [(user_id, linked_user_id_del_compañero_o_None), ...] para cada
    usuario cuyo vínculo no es mutuo (compañero inexistente o que apunta a otro).
    """
    broken = []
    linked_users = db.query(User).filter(User.linked_user_id != None).all()  # noqa: E711
    by_id = {u.id: u for u in db.query(User).filter(
        User.id.in_([u.linked_user_id for u in linked_users])
    ).all()}

    for user in linked_users:
        peer = by_id.get(user.linked_user_id)
        if peer is None:
            broken.append((user.id, None))
        elif peer.linked_user_id != user.id:
            broken.append((user.id, peer.linked_user_id))
    return broken


async def audit_links():
    """Se ejecuta cada noche. Solo informa; no modifica nada."""
    db = SessionLocal()
    try:
        broken = find_broken_links(db)
        for user_id, peer_points_to in broken:
            user = db.query(User).filter(User.id == user_id).first()
            logger.critical(
                f"🚨 INCONSISTENCIA: usuario {user_id} → {user.linked_user_id}, "
                f"pero {user.linked_user_id} → {peer_points_to if peer_points_to is not None else 'N/A'}. "
                f"Requiere reparación manual."
            )
        if not broken:
            logger.info("🔍 Auditoría de vínculos: todo consistente")
        return broken
    finally:
        db.close()


# =============================================================================
# ===================== CONTROL DEL SCHEDULER =================================
# =============================================================================

def create_scheduler() -> AsyncIOScheduler:
    """Crea el scheduler con la auditoría a las 03:00 (APP_TIMEZONE)."""
    global scheduler

    scheduler = AsyncIOScheduler(timezone=APP_TIMEZONE)

    scheduler.add_job(
        audit_links,
        CronTrigger(hour=3, minute=0),
        id="audit_links",
        name="Auditar vínculos entre usuarios",
        replace_existing=True
    )

    logger.info("⏰ Scheduler configurado: auditoría de vínculos diaria")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
