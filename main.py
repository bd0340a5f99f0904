import asyncio
import contextlib
import inspect
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from openai import AsyncOpenAI

from routes.polling_route import router as polling_router
from routes.realtime_ws import router as realtime_router
from services.image_normalizer import ImageNormalizer
from services.realtime.channels import ChannelStore
from services.realtime.chat_history import ChatHistory
from services.realtime.chat_streamer import OpenAIChatStreamer
from services.realtime.event_emitter import ChatEventEmitter
from services.realtime.ws_session import RealtimeSessionHandler
from utils.database_cleaner import DatabaseCleaner
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import ServerSettings

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file if present

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)


async def _close_openai_client(client) -> None:
    """Close the OpenAI client if it exposes a close/aclose method."""
    aclose = getattr(client, "aclose", None) or getattr(client, "close", None)
    if aclose is None:
        return
    try:
        if inspect.iscoroutinefunction(aclose):
            await aclose()
        else:
            result = aclose()
            if inspect.isawaitable(result):
                await result
    except Exception as exc:
        LOGGER.warning("Error while closing the OpenAI client: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the SQLite database (at DATABASE_DIR/app.db)
      - the OpenAI async client
      - the client channel store, chat history and event emitter
    and attach them to `app.state`.
    """
    settings = ServerSettings.from_env()

    db_initializer = AsyncDatabaseInitializer(reset_on_start=settings.reset_db_on_start)
    await db_initializer.ensure_database()
    app.state.db_initializer = db_initializer

    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")

    try:
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
    except Exception as exc:
        raise RuntimeError("Failed to initialize OpenAI Async client") from exc
    app.state.openai_client = openai_client

    channel_store = ChannelStore(max_frames=settings.outbox_size, idle_ttl=settings.channel_ttl)
    streamer = OpenAIChatStreamer(
        openai_client,
        ImageNormalizer(max_size=(settings.image_max_size, settings.image_max_size)),
    )
    emitter = ChatEventEmitter(
        streamer,
        ChatHistory(db_initializer),
        history_limit=settings.history_limit,
        max_output_tokens=settings.max_output_tokens,
    )
    app.state.channel_store = channel_store
    app.state.chat_emitter = emitter
    app.state.realtime_handler = RealtimeSessionHandler(emitter)

    background = [asyncio.create_task(channel_store.run_periodic_expiry())]
    if settings.message_retention_days > 0:
        cleaner = DatabaseCleaner(db_initializer, retention_seconds=settings.message_retention_days * 86_400)
        background.append(asyncio.create_task(cleaner.run_periodic_cleanup()))

    LOGGER.info("Chat server ready (default model %s)", settings.default_model)
    try:
        yield
    finally:
        await emitter.shutdown()
        for task in background:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await _close_openai_client(openai_client)


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        """
        Health check reporting DB, OpenAI client and live channel state.
        """
        state = request.app.state
        has_db = hasattr(state, "db_initializer")
        has_openai = getattr(state, "openai_client", None) is not None
        store = getattr(state, "channel_store", None)
        emitter = getattr(state, "chat_emitter", None)
        return {
            "ok": True,
            "db_initialized": has_db,
            "openai_available": has_openai,
            "channels": len(store) if store is not None else 0,
            "active_generations": len(emitter.active_ids()) if emitter is not None else 0,
        }

    # Register application routers
    app.include_router(realtime_router)
    app.include_router(polling_router)

    return app


app = create_app()
