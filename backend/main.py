import logging
import os
import sys

# ── Exclude virtualenvs from uvicorn --reload watcher ──
if "--reload" in sys.argv or os.environ.get("UVICORN_RELOAD"):
    os.environ.setdefault("WATCHFILES_IGNORE_DIRS", ".venv,venv,__pycache__,node_modules")

from dotenv import load_dotenv

# .env must be loaded before modules read their os.getenv constants
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from db.database import DATABASE_URL, create_store
from models.ai_ocr_model import AIOCRClient
from services.analytics_service import AnalyticsHub

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if o.strip()
]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# -------- ROUTERS --------
from routers import analytics_routes, ocr_routes, onboarding_routes, upload_routes


def create_app(store=None, ocr_client=None, analytics=None) -> FastAPI:
    app = FastAPI(
        title="SunShare Onboarding Backend",
        description="ID intake, OCR and validation for the SunShare onboarding wizard",
        version="2.0.0",
    )

    # -------- CORS --------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------- SHARED STATE --------
    app.state.store = store if store is not None else create_store(DATABASE_URL)
    app.state.ocr_client = ocr_client if ocr_client is not None else AIOCRClient()
    app.state.analytics = analytics if analytics is not None else AnalyticsHub()

    # -------- REGISTER ROUTERS --------
    app.include_router(ocr_routes.router)
    app.include_router(upload_routes.router)
    app.include_router(onboarding_routes.router)
    app.include_router(analytics_routes.router)

    # -------- ROOT HEALTH CHECK --------
    @app.get("/")
    def root():
        return {
            "status": "running",
            "service": "SunShare Onboarding Backend",
            "ai_ocr": app.state.ocr_client.configured,
        }

    return app


app = create_app()
