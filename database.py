"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Este archivo configura la conexión a la base de datos.

En DESARROLLO: usa SQLite (un archivo .db)
En PRODUCCIÓN: usa PostgreSQL

¿Cómo sabe cuál usar?
→ Si existe la variable de entorno DATABASE_URL, usa esa URL.
→ Si no existe, usa SQLite local.

Los tests usan "sqlite://" (SQLite en memoria compartida).
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from errors import ConflictError

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dailyquest.db")

# SQLAlchemy necesita "postgresql+psycopg://" para usar psycopg (v3)
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────
# check_same_thread=False → SQLite no permite acceso desde varios hilos por defecto.
# SQLite en memoria: todas las sesiones deben compartir UNA conexión (StaticPool),
# si no cada sesión vería una base de datos vacía distinta.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_args["poolclass"] = StaticPool

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────────────
# expire_on_commit=False → los objetos siguen siendo legibles después del commit
# (los servicios devuelven el registro recién guardado).

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Generador que crea una sesión de BD y la cierra al terminar.

    Se usa como "dependencia" en FastAPI:
      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Crea todas las tablas en la BD si no existen.
    Se llama una vez al arrancar la aplicación.
    """
    import models  # noqa: F401  (registra las tablas en Base.metadata)
    Base.metadata.create_all(bind=engine)


def drop_db():
    """Borra todas las tablas. Solo para tests."""
    import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)


def commit_or_conflict(db):
    """
    Hace commit. Si el version_id no coincide (otra petición guardó antes),
    deshace la transacción y lanza ConflictError: el cliente debe reintentar.
    """
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConflictError("Los datos cambiaron mientras se guardaban, inténtalo de nuevo")
