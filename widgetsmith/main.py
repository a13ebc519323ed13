# widgetsmith/main.py
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import retry, stop_after_attempt, wait_fixed

from widgetsmith import __version__
from widgetsmith.api import events, tools
from widgetsmith.core.config import Settings, settings as default_settings
from widgetsmith.crud.tool import ToolStore
from widgetsmith.middleware import LoggingMiddleware
from widgetsmith.models.base import Base, create_engine_and_sessionmaker
from widgetsmith.services.code_generator import CodeGenerationService
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.execution_engine import ExecutionEngine
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.services.orchestrator import GenerationOrchestrator
from widgetsmith.services.rate_limiter import RateLimiter
from widgetsmith.services.sandbox_executor import SandboxService, build_sandbox_service
from widgetsmith.utils.logger import trace_logger_service

# --- Logger Setup ---
trace_logger = trace_logger_service

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=default_settings.LOG_LEVEL,
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


async def _retry_db_connection(engine: AsyncEngine, settings: Settings):
    @retry(stop=stop_after_attempt(settings.DB_RETRY_ATTEMPTS), wait=wait_fixed(settings.DB_RETRY_DELAY), reraise=True)
    async def _connect():
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    await _connect()


def create_app(
    settings: Optional[Settings] = None,
    generator: Optional[CodeGenerationService] = None,
    sandbox: Optional[SandboxService] = None,
) -> FastAPI:
    """
    Builds the application. `generator` and `sandbox` replace the default
    OpenAI generator and configured sandbox backend (tests use this).
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Application startup initiated.")
        await trace_logger.log_event("app_startup", {"environment": settings.ENVIRONMENT})

        engine = None
        orchestrator = None
        sandbox_service = sandbox or build_sandbox_service(settings)
        try:
            # 1. Connect to database
            logger.info("Connecting to database...")
            engine, session_factory = create_engine_and_sessionmaker(settings.DATABASE_URL)
            await _retry_db_connection(engine, settings)
            logger.info("✅ Database connection successful.")

            # 2. Create tables
            logger.info("Ensuring database tables are created...")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("✅ Database tables ensured.")

            # 3. Initialize sandbox
            logger.info("Initializing sandbox service...")
            await sandbox_service.initialize()
            logger.info("✅ Sandbox service initialized.")

            # 4. Wire services
            tool_locks = KeyedLocks("tool")
            broker = ToolEventBroker()
            store = ToolStore(settings.MAX_TOOLS_PER_USER, KeyedLocks("owner"), trace_logger)
            engine_service = ExecutionEngine(session_factory, store, sandbox_service, broker, tool_locks, trace_logger)
            orchestrator = GenerationOrchestrator(
                session_factory,
                store,
                generator or CodeGenerationService(settings),
                engine_service,
                broker,
                tool_locks,
                trace_logger,
                generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
            )

            app.state.settings = settings
            app.state.db_engine = engine
            app.state.session_factory = session_factory
            app.state.tool_store = store
            app.state.event_broker = broker
            app.state.execution_engine = engine_service
            app.state.orchestrator = orchestrator
            app.state.rate_limiter = RateLimiter({
                "generation": settings.MAX_GENERATIONS_PER_HOUR,
                "execution": settings.MAX_EXECUTIONS_PER_HOUR,
            })
            interrupted = await orchestrator.recover_interrupted()
            if interrupted:
                logger.info(f"Recovered {len(interrupted)} interrupted generation(s).")
            logger.info("✅ Services ready.")

            yield

        except Exception as e:
            error_details = f"🛑 Application startup failed: {e.__class__.__name__}: {e}"
            logger.critical(error_details, exc_info=True)
            await trace_logger.log_event("app_startup_failure", {"reason": error_details})
            raise

        finally:
            logger.info("👋 Application shutdown initiated.")
            await trace_logger.log_event("app_shutdown")

            if orchestrator is not None:
                await orchestrator.shutdown()

            logger.info("Shutting down sandbox service...")
            await sandbox_service.shutdown()
            logger.info("✅ Sandbox shut down.")

            if engine is not None:
                logger.info("Disposing database engine...")
                await engine.dispose()
                logger.info("✅ Database engine disposed.")

            logger.info("👋 Shutdown complete.")

    app = FastAPI(
        title="WidgetSmith",
        description="Generate, run and synchronize small user-defined widgets.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url=None,
    )

    # --- Middleware ---
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Routers ---
    app.include_router(tools.router, prefix=settings.API_V1_STR + "/tools", tags=["Custom Tools"])
    app.include_router(events.router, prefix=settings.API_V1_STR, tags=["Custom Tools"])

    @app.get("/", summary="Health Check", response_model=Dict[str, Any])
    async def root():
        return {
            "message": "WidgetSmith backend is live",
            "status": "operational",
            "sandbox": getattr(app.state, "settings", settings).SANDBOX_BACKEND,
        }

    return app


app = create_app()
