"""
Eternal Storyteller - Main Application

Interactive bedtime stories: an LLM writes each chapter, ElevenLabs reads
it aloud and the listener's choice steers the next one.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uvicorn
from contextlib import asynccontextmanager
from pathlib import Path
from datetime import datetime
import logging
import sys
import traceback

from eternal_storyteller.config import get_settings
from eternal_storyteller.errors import StorytellerError
from eternal_storyteller.services.events import EventEmitter
from eternal_storyteller.services.logger import init_logger
from eternal_storyteller.services.narration import NarrationEngine
from eternal_storyteller.services.storage import create_storage
from eternal_storyteller.services.story_service import StoryService
from eternal_storyteller.services.voice import VoiceService
from eternal_storyteller.api.routes import router, set_story_service, get_story_service, has_story_service

logger = logging.getLogger(__name__)


def configure_logging(log_dir: Path = Path("logs")) -> Path:
    """Log to a timestamped file (detailed) and to stdout (messages only)"""
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / f"storyteller_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_formatter = logging.Formatter('%(message)s')

    # File handler (detailed logs)
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (user-friendly output)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=[file_handler, console_handler]
    )
    logger.info(f"📝 Logging to: {log_file}")
    return log_file


def build_story_service(settings, storyteller_logger=None) -> StoryService:
    """Wire storage, narration, voice and events into a StoryService"""
    return StoryService(
        settings=settings,
        storage=create_storage(settings, storyteller_logger=storyteller_logger),
        narration=NarrationEngine(settings, storyteller_logger=storyteller_logger),
        voice=VoiceService(settings, storyteller_logger=storyteller_logger),
        events=EventEmitter(),
        storyteller_logger=storyteller_logger,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle management for the application.

    Builds the story service on startup unless one was already injected.
    """
    settings = get_settings()
    print("🌙 Initializing Eternal Storyteller...")

    app_logger = init_logger(settings=settings)

    debug_flags = []
    if settings.debug_storage:
        debug_flags.append("Storage")
    if settings.debug_api_calls:
        debug_flags.append("API Calls")
    if debug_flags:
        print(f"🐛 Debug logging enabled: {', '.join(debug_flags)}")
        print(f"📊 Debug logs: {settings.debug_log_dir}/")

    if not settings.openai_api_key:
        print("⚠️  OPENAI_API_KEY is missing! Narration and transcription will fail.")
    if not settings.elevenlabs_api_key:
        print("⚠️  ELEVENLABS_API_KEY is missing! Voice synthesis will fail.")

    built_here = False
    if not has_story_service():
        set_story_service(build_story_service(settings, app_logger))
        built_here = True
        print(f"✅ Story service ready (storage: {settings.storage_backend})")

    print(f"🌙 Eternal Storyteller ready on port {settings.port}!")
    print(f"📚 API Documentation: http://localhost:{settings.port}/docs")

    yield

    print("👋 Shutting down Eternal Storyteller...")
    if built_here:
        service = get_story_service()
        service.voice.close()
        close_storage = getattr(service.storage, "close", None)
        if close_storage:
            close_storage()
        set_story_service(None)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="""
        Interactive AI bedtime stories.

        Features:
        - Chapter generation with two choices per chapter (OpenAI)
        - Narration audio (ElevenLabs)
        - Spoken choices (Whisper transcription)
        """,
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware
    # CORS_ALLOWED_ORIGINS is "*" or a comma-separated list
    cors_origins = (
        ["*"] if settings.cors_allowed_origins == "*"
        else [origin.strip() for origin in settings.cors_allowed_origins.split(",")]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Validation error handler - log details for debugging
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        error_details = []
        for error in errors:
            input_val = error.get('input', 'N/A')
            if isinstance(input_val, str) and len(input_val) > 100:
                input_val = input_val[:100] + "..."
            error_details.append(f"{error['loc']}: {error['msg']} (input: {input_val})")

        logger.error(f"❌ Validation Error on {request.url.path}: " + " | ".join(error_details))

        return JSONResponse(
            status_code=422,
            content={"detail": [
                {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
                for error in errors
            ]}
        )

    # Domain errors carry their own status code
    @app.exception_handler(StorytellerError)
    async def storyteller_exception_handler(request: Request, exc: StorytellerError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(f"⚠️ {type(exc).__name__} on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "error": type(exc).__name__}
        )

    # Global exception handler - catch unhandled exceptions to prevent crashes
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = datetime.now().strftime('%Y%m%d_%H%M%S_%f')

        logger.error(f"❌ UNHANDLED EXCEPTION [{error_id}]")
        logger.error(f"   Path: {request.url.path}")
        logger.error(f"   Method: {request.method}")
        logger.error(f"   Error: {type(exc).__name__}: {exc}")
        logger.error(f"   Traceback:\n{traceback.format_exc()}")

        # Details stay in the server log, looked up by error_id
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "error_id": error_id,
                "message": "An unexpected error occurred. Please try again."
            }
        )

    app.include_router(router)

    # Background music tracks
    music_path = Path(settings.music_dir)
    if music_path.is_dir():
        app.mount("/music", StaticFiles(directory=str(music_path)), name="music")
        print(f"🎶 Music mounted from: {music_path}")

    @app.get("/")
    async def root():
        return {
            "message": f"Welcome to {settings.app_name}!",
            "docs": "/docs",
            "health": "/api/health",
            "version": "1.0.0"
        }

    return app


app = create_app()


def main():
    """Run the application"""
    settings = get_settings()
    configure_logging()

    uvicorn.run(
        "eternal_storyteller.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
