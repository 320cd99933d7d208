from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from marketchat.app_logging import init_logging
from marketchat.core.config import get_settings
from marketchat.core.errors import AuthorizationError, NotFoundError, StoreError, ValidationError
from marketchat.database.connection import close_mongo_connection, connect_to_mongo, get_database, get_transaction_runner
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.routers.admin import router as admin_router
from marketchat.routers.conversations import router as conversations_router
from marketchat.routers.profiles import router as profiles_router
from marketchat.routers.realtime import router as realtime_router
from marketchat.services.chat_service import ChatService
from marketchat.services.profile_service import NoopProfileCache, RedisProfileCache
from marketchat.services.realtime_dispatcher import RealtimeDispatcher
from marketchat.utils.realtime_bus import close_bus, create_bus, set_bus


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_logging(settings)

    db = await connect_to_mongo(settings)
    await ConversationRepository(db).ensure_indexes(unique_key=settings.CONVERSATION_UNIQUE_KEY)
    await MessageRepository(db).ensure_indexes()

    bus = create_bus(settings.REDIS_URL)
    set_bus(bus)
    service = ChatService(
        MessageRepository(db), ConversationRepository(db), get_transaction_runner(db, settings), bus, settings
    )
    app.state.dispatcher = RealtimeDispatcher(service, bus, stream_limit=settings.MESSAGE_STREAM_LIMIT)
    cache_client = None
    if settings.REDIS_URL:
        cache_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        app.state.profile_cache = RedisProfileCache(cache_client, settings.PROFILE_CACHE_TTL_SECONDS)
    else:
        app.state.profile_cache = NoopProfileCache()
    try:
        yield
    finally:
        await app.state.dispatcher.close()
        await close_bus()
        if cache_client is not None:
            await cache_client.aclose()
        await close_mongo_connection()


app = FastAPI(title=get_settings().PROJECT_NAME, lifespan=lifespan)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
@app.exception_handler(AuthorizationError)
async def not_found_handler(request: Request, exc: Exception):
    # denied and missing look the same to the caller
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Conversation not found"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Storage unavailable"})


app.include_router(conversations_router)
app.include_router(realtime_router)
app.include_router(profiles_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
