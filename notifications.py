"""
=============================================================================
NOTIFICATIONS.PY — Notificaciones en Vivo (WebSocket)
=============================================================================
Reenvía eventos al compañero mientras tiene la app abierta:
  - "receive_encouragement" → te han enviado un mensaje de ánimo
  - "quest_updated"         → tu compañero ha cambiado sus misiones

Piezas:
  ConnectionRegistry → qué conexiones (sesiones) tiene abiertas cada usuario.
                       Es un objeto normal que se inyecta, no un global.
  NotificationRelay  → manda un evento a TODAS las sesiones de un usuario.

Entrega "best-effort":
  - La BD ya se guardó antes; el aviso nunca la bloquea ni la deshace.
  - Si el usuario no tiene sesiones, el evento se pierde (no hay cola ni reintentos).
    La app recupera el estado consultando la API.
"""

import logging
from datetime import datetime
from typing import Any, Protocol

from errors import ConflictError

logger = logging.getLogger("dailyquest.relay")

EVENT_ENCOURAGEMENT = "receive_encouragement"
EVENT_QUEST_UPDATED = "quest_updated"


class RelaySession(Protocol):
    """Cualquier cosa con send_json asíncrono (p. ej. fastapi.WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...


class ConnectionRegistry:
    """
    connection_id → (identity_id, session)

    Una conexión se asocia a UN usuario durante toda su vida.
    Registrar otra vez la misma conexión con el mismo usuario no hace nada.
    """

    def __init__(self):
        self._connections: dict[str, tuple[int, RelaySession]] = {}

    def bind(self, connection_id: str, identity_id: int, session: RelaySession) -> bool:
        """True si se registró ahora, False si ya estaba registrada con ese usuario."""
        current = self._connections.get(connection_id)
        if current is not None:
            if current[0] != identity_id:
                raise ValueError(
                    f"La conexión {connection_id} ya pertenece al usuario {current[0]}"
                )
            return False
        self._connections[connection_id] = (identity_id, session)
        return True

    def unbind(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def identity_of(self, connection_id: str) -> int | None:
        entry = self._connections.get(connection_id)
        return entry[0] if entry else None

    def sessions_for(self, identity_id: int) -> list[tuple[str, RelaySession]]:
        return [
            (connection_id, session)
            for connection_id, (owner, session) in list(self._connections.items())
            if owner == identity_id
        ]

    def __len__(self):
        return len(self._connections)


class NotificationRelay:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    def register(self, connection_id: str, identity_id: int, session: RelaySession) -> bool:
        try:
            registered = self.registry.bind(connection_id, identity_id, session)
        except ValueError as e:
            raise ConflictError(str(e))
        if registered:
            logger.info(f"🔌 Conexión {connection_id} → usuario {identity_id}")
        return registered

    def unregister(self, connection_id: str) -> None:
        identity_id = self.registry.identity_of(connection_id)
        self.registry.unbind(connection_id)
        if identity_id is not None:
            logger.info(f"🔌 Conexión {connection_id} cerrada (usuario {identity_id})")

    async def notify_encouragement(self, to_id: int, payload: dict) -> int:
        return await self._fan_out(to_id, EVENT_ENCOURAGEMENT, payload)

    async def notify_quest_update(self, to_id: int, payload: dict) -> int:
        return await self._fan_out(to_id, EVENT_QUEST_UPDATED, payload)

    async def _fan_out(self, to_id: int, event: str, payload: dict) -> int:
        """
        Envía el evento a todas las sesiones de to_id.
        Devuelve cuántas lo recibieron. Una sesión que falla se da de baja.
        """
        sessions = self.registry.sessions_for(to_id)
        if not sessions:
            logger.debug(f"Sin sesiones activas para {to_id}, evento {event} descartado")
            return 0

        message = {
            "event": event,
            "data": {**payload, "timestamp": datetime.utcnow().isoformat()}
        }
        delivered = 0
        for connection_id, session in sessions:
            try:
                await session.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"⚠️ No se pudo entregar {event} a la conexión {connection_id}: {e}")
                self.registry.unbind(connection_id)
        return delivered
