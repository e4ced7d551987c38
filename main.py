import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import Base, engine, get_settings
from api import chat, sessions, websocket
from core.sweeper import SessionSweeper

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 設定 logging、建立資料庫表、啟動 sweeper
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Base.metadata.create_all(bind=engine)

    sweeper_task = None
    if settings.sweep_enabled:
        sweeper = SessionSweeper()
        sweeper_task = asyncio.create_task(sweeper.run_forever(settings.sweep_interval_seconds))

    yield

    # Shutdown: 停止 sweeper
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            logger.info("Session sweeper stopped")


app = FastAPI(
    title="Focus Session API",
    description="Backend API for shared timed focus sessions",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sessions.router)
app.include_router(sessions.invite_router)
app.include_router(chat.router)
app.include_router(websocket.router)


@app.get("/")
def root():
    return {"message": "Focus Session API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
