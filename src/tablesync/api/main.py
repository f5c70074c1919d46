"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from tablesync.db.engine import get_engine
from tablesync.api.routes import configs, sync as sync_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="tablesync",
        description="Two-way sync between a record API and a spreadsheet",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(configs.router, prefix="/configs", tags=["configs"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
