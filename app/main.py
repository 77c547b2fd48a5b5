from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import TenantMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.taxdocs.router import router as taxdocs_router
from app.modules.pos.router import router as pos_router

# Import models for table creation
import app.modules.pos.models
import app.modules.costs.models
import app.modules.taxdocs.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="DTE Engine API",
    description="Emisión, importación y recuperación de documentos tributarios electrónicos (SII / OpenFactura)",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Artifact-Tier"],
)

# Include routers
app.include_router(taxdocs_router)
app.include_router(pos_router)

# Create database tables (only for development and tests, no migrations)
if settings.ENVIRONMENT in ("development", "test"):
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "DTE Engine API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("DTE Engine API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Emisor: {settings.COMPANY_TAX_ID} ({settings.COMPANY_NAME})")
    if not settings.OPENFACTURA_API_KEY:
        logger.warning("OPENFACTURA_API_KEY no configurada: la emisión y la importación fallarán")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("DTE Engine API shutting down...")
