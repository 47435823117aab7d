import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router as api_router
from app.core.settings import SETTINGS

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:8000",
]

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

origins = SETTINGS.cors_allow_origins or DEFAULT_CORS_ORIGINS

app = FastAPI(title="attendance-assistant")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)
