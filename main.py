import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from dal.record_dal import RecordDAL
from routes.realtime_ws import router as realtime_router
from routes.session_route import router as session_router
from services.store.document_store import DocumentStore
from utils.database_init import AsyncDatabaseInitializer
from utils.session_cleaner import SessionCleaner
from utils.settings import Settings, settings as default_settings

load_dotenv()  # Load environment variables from .env file if present

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the optional SQLite database (at DATABASE_DIR/app.db) for record persistence
      - the shared document store, reloaded from the database when configured
      - the periodic session cleaner
    and attach them to `app.state`.
    """
    config: Settings = app.state.settings

    record_dal = None
    app.state.db_initializer = None
    if config.database_dir is not None:
        db_initializer = AsyncDatabaseInitializer(
            config.database_dir, reset_on_start=config.store_reset_on_start
        )
        await db_initializer.ensure_database()
        app.state.db_initializer = db_initializer
        record_dal = RecordDAL(db_initializer)

    store = DocumentStore(record_dal=record_dal, persisted_roots=(config.sessions_path,))
    loaded = await store.load()
    app.state.document_store = store

    cleaner = SessionCleaner(
        store.connect(),
        sessions_path=config.sessions_path,
        closed_grace_seconds=config.closed_session_grace_seconds,
        waiting_ttl_seconds=config.waiting_session_ttl_seconds,
        lease_seconds=config.presence_lease_seconds,
        lease_presence=config.presence_mode == "lease",
    )
    if loaded:
        # Presence does not survive a restart; sessions still open were orphaned.
        await cleaner.close_orphaned_sessions()
    cleanup_task = asyncio.create_task(cleaner.run_periodic_cleanup(config.cleanup_interval_seconds))

    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await store.shutdown()


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(lifespan=lifespan)
    app.state.settings = app_settings or default_settings
    app.state.document_store = None

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that reports store availability and persistence.
        """
        store = request.app.state.document_store
        return {
            "ok": store is not None and store.available,
            "persistent": bool(store is not None and store.persistent),
            "connections": store.connection_count if store is not None else 0,
        }

    # Register application routers
    app.include_router(session_router)
    app.include_router(realtime_router)

    return app


app = create_app()
