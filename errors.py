"""
=============================================================================
ERRORS.PY — Errores del Dominio
=============================================================================
Los servicios (users, linking, quests, messages) lanzan estas excepciones.
main.py las convierte en respuestas JSON con:
  - status_code → el código HTTP
  - kind        → un identificador estable para que el cliente distinga el error

Jerarquía:
  DailyQuestError
  ├── ValidationError (400)
  │   └── InvalidDateError
  ├── AuthenticationError (401)
  ├── ForbiddenError (403)
  ├── NotFoundError (404)
  │   └── NotLinkedError
  ├── ConflictError (409)
  │   └── AlreadyLinkedError
  ├── SelfReferenceError (400)
  │   └── SelfLinkError
  ├── GenerationExhaustedError (503)
  └── FatalInconsistencyError (500)  ← requiere reparación manual de datos
"""


class DailyQuestError(Exception):
    status_code = 500
    kind = "internal_error"

    def __init__(self, detail: str = "Error interno del servidor"):
        super().__init__(detail)
        self.detail = detail


class ValidationError(DailyQuestError):
    status_code = 400
    kind = "validation_error"


class InvalidDateError(ValidationError):
    kind = "invalid_date"

    def __init__(self, detail: str = "Formato de fecha incorrecto (YYYY-MM-DD)"):
        super().__init__(detail)


class AuthenticationError(DailyQuestError):
    status_code = 401
    kind = "authentication_error"


class ForbiddenError(DailyQuestError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(DailyQuestError):
    status_code = 404
    kind = "not_found"


class NotLinkedError(NotFoundError):
    kind = "not_linked"

    def __init__(self, detail: str = "No tienes ningún usuario vinculado"):
        super().__init__(detail)


class ConflictError(DailyQuestError):
    status_code = 409
    kind = "conflict"


class AlreadyLinkedError(ConflictError):
    kind = "already_linked"


class SelfReferenceError(DailyQuestError):
    status_code = 400
    kind = "self_reference"


class SelfLinkError(SelfReferenceError):
    kind = "self_link"

    def __init__(self, detail: str = "No puedes vincularte con tu propio código"):
        super().__init__(detail)


class GenerationExhaustedError(DailyQuestError):
    status_code = 503
    kind = "generation_exhausted"


class FatalInconsistencyError(DailyQuestError):
    """
    Un vínculo quedó a medias (A → B pero B no → A).
    Se registra en el log como CRITICAL: hay que repararlo a mano.
    """
    status_code = 500
    kind = "fatal_inconsistency"

    def __init__(self, detail: str, user_ids: tuple = ()):
        super().__init__(detail)
        self.user_ids = user_ids
