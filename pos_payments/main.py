import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI

from pos_payments.routes import router
from pos_payments.database import init_db

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Restaurant POS Payment Service")

app.include_router(router)

init_db()
