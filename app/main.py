from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.firebase import init_firebase
from app.core.database import engine, Base
from app.core.redis_cache import RedisCache
from app.services.paypal_service import PayPalClient
from app.api.v1.router import api_router
from app import models  # noqa: F401  registers tables on Base.metadata
import logging
import os

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Read version from VERSION file, fallback to default if not found."""
    version_file = os.path.join(os.path.dirname(os.path.dirname(__file__)), "VERSION")
    try:
        if os.path.exists(version_file):
            with open(version_file, "r") as f:
                version = f.read().strip()
                if version:
                    return version
    except OSError as e:
        logger.warning(f"Could not read VERSION file: {e}")
    return "1.0.0"


# Initialize Firebase
init_firebase()

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="CourseLab API",
    version=get_version(),
    debug=settings.debug,
    redirect_slashes=False,
)

# Process-wide collaborators, injected into routes via app.api.v1.dependencies
app.state.cache = RedisCache(settings.redis_url, password=settings.redis_password)
app.state.paypal = PayPalClient.from_settings(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(api_router, prefix=settings.api_v1_str)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "redis": "connected" if app.state.cache.ping() else "unavailable",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
