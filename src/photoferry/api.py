"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, HTTPException
from sqlalchemy import text

from photoferry.database import SessionLocal, init_db
from photoferry.routers import albums, files, operations, queue
from photoferry.service import build_service
from photoferry.settings import settings

app = FastAPI(
    title="Photoferry",
    description="Queue-driven transfer of source files into a remote media library",
    version="0.1.0"
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def create_service():
    """Build the process-wide service once; a pre-set service is kept as is."""
    if getattr(app.state, "service", None) is not None:
        return
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    app.state.service = build_service()


# Register all routers
app.include_router(queue.router)
app.include_router(albums.router)
app.include_router(files.router)
app.include_router(operations.router)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint with DB connectivity verification."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {exc}")
    finally:
        db.close()


def main() -> None:
    import uvicorn

    uvicorn.run("photoferry.api:app", host=settings.api_host, port=settings.api_port)
