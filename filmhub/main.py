import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from filmhub import accounts, config
from filmhub import models  # noqa: F401  registers every table on Base.metadata
from filmhub.database import Base, SessionLocal, engine, init_db
from filmhub.routers import admin, auth, comments, films, history, likes, playlists, profile, ratings

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="FilmHub API",
    description="Short-film sharing platform - upload, playback, community and moderation",
    version="1.0.0"
)


@app.on_event("startup")
def startup_event():
    """Create tables and the bootstrap admin once per process."""
    logger.info("Database initialization started")
    init_db(engine, Base.metadata)

    db = SessionLocal()
    try:
        accounts.ensure_admin(db)
    finally:
        db.close()
    logger.info("Database initialization done")


# CORS (frontend)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router)
app.include_router(films.router)
app.include_router(likes.router)
app.include_router(comments.router)
app.include_router(ratings.router)
app.include_router(profile.router)
app.include_router(history.router)
app.include_router(playlists.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    return {
        "message": "FilmHub API",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "auth": "/api/auth",
            "films": "/api/films",
            "upload": "/api/films/upload",
            "stream": "/api/films/{id}/stream",
            "comments": "/api/comments",
            "ratings": "/api/ratings",
            "profile": "/api/profile",
            "history": "/api/history",
            "playlists": "/api/playlists",
            "admin": "/api/admin",
        }
    }


@app.get("/health")
def health_check():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Health check DB error: {e}")
        database = "unavailable"
    finally:
        db.close()

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
    }
