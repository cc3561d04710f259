# privacy_advisor/main.py

import logging

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from privacy_advisor.core.logging_setup import setup_logging
from privacy_advisor.db.init_db import init_db
from privacy_advisor.db.session import SessionLocal, get_db
from privacy_advisor.scans.cleanup import auto_cleanup_scans

logger = logging.getLogger(__name__)

app = FastAPI(title="Privacy Advisor worker")


@app.on_event("startup")
async def on_startup():
    setup_logging()
    init_db()

    db = SessionLocal()
    try:
        result = auto_cleanup_scans(db)
        if result["fixed_queued"] or result["fixed_running"]:
            logger.info("startup cleanup: %s", result)
    finally:
        db.close()


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/health/db")
def health_db(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("db health check failed: %s", e)
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"ok": True, "db": "ok"}
