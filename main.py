"""FastAPI application for the TaskFlow conversational task assistant"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables
load_dotenv()

from config import settings
from api.routes import chat, knowledge
from core.services.gemini_service import gemini_service
from core.services.rate_limiter import completion_rate_limiter

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load default knowledge and run the idle-state sweep while the app is up"""
    await chat.orchestrator.knowledge_base.initialize()
    chat.orchestrator.state_store.start_background_sweep(
        timedelta(minutes=settings.STATE_SWEEP_INTERVAL_MINUTES)
    )
    logger.info(
        f"TaskFlow assistant started ({settings.ENVIRONMENT}, "
        f"model tier {'enabled' if settings.model_enabled else 'disabled'})"
    )
    yield
    chat.orchestrator.state_store.stop_background_sweep()


# Create FastAPI app
app = FastAPI(
    title="TaskFlow Assistant API",
    version="1.0.0",
    description="Conversational task management",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "model_tier": "enabled" if gemini_service.is_available else "disabled",
        "active_flows": chat.orchestrator.state_store.active_count(),
        "rate_limiter": completion_rate_limiter.get_status(),
        "knowledge": chat.orchestrator.knowledge_base.get_stats(),
    }


app.include_router(chat.router, tags=["chat"])
app.include_router(knowledge.router, tags=["knowledge"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
