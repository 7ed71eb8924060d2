from fastapi import FastAPI, UploadFile, File, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
import uvicorn
from typing import Optional
import logging
import traceback
import os
import uuid
from contextlib import asynccontextmanager
from datetime import date
from dotenv import load_dotenv

load_dotenv()

import database
from auth import router as auth_router, get_current_user
from categories import categories_for, is_valid_category, reconcile_category
from extraction import ExtractionError, UnsupportedDocument, extract_document, validate_document
from gst import ALL, QUARTERS, default_quarter, derive_gst, parse_amount, parse_quarter_filter
from models import (
    BusinessPercentages, ManualEntry, Platform, Transaction, TransactionType, User
)
from reports import build_gst_report
from ssl_config import get_uvicorn_ssl_config
from store import ExtractionInProgress, SessionNotLoaded, sessions

# Configure logging
logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('gst_helper')

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup"""
    database.init_db()
    database.migrate_db()
    yield


# Initialize FastAPI app
app = FastAPI(title="GST for Drivers", lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv('CORS_ORIGINS', '*').split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix="/auth", tags=["auth"])

# Get configuration from environment variables
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '8000'))


@app.exception_handler(SessionNotLoaded)
async def session_not_loaded_handler(request, exc: SessionNotLoaded):
    logger.warning(f"Request before data load: {str(exc)}")
    return JSONResponse(
        status_code=409,
        content={"error": "Data not loaded yet", "detail": str(exc)}
    )


def resolve_filter(quarter: Optional[str], default):
    if quarter is None:
        return default
    try:
        return parse_quarter_filter(quarter)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def current_session(current_user: User = Depends(get_current_user)):
    return sessions.get(current_user)


def build_manual_transaction(entry: ManualEntry) -> Transaction:
    """Validate manual form input. Nothing reaches the store unless this succeeds."""
    try:
        gross = parse_amount(entry.gross_amount)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Gross amount must be a number, got {entry.gross_amount!r}")

    if entry.gst_amount is None or not str(entry.gst_amount).strip():
        gst = derive_gst(gross)
    else:
        try:
            gst = parse_amount(entry.gst_amount)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"GST amount must be a number, got {entry.gst_amount!r}")

    category = entry.category or reconcile_category(entry.type, entry.platform, None)
    if not is_valid_category(entry.type, entry.platform, category):
        raise HTTPException(
            status_code=400,
            detail=f"Category {category!r} is not valid for {entry.type.value} on {entry.platform.value}"
        )

    return Transaction(
        id=str(uuid.uuid4()),
        date=entry.date or date.today(),
        description=entry.description,
        type=entry.type,
        category=category,
        gross_amount=gross,
        gst_amount=gst,
        net_amount=gross - gst,
        platform=entry.platform,
        confidence=1.0,
    )


@app.get("/")
async def root():
    return {"status": "ok", "message": "GST for Drivers API is running"}


@app.get("/health")
async def health_check():
    return {"status": "ok", "message": "Server is running"}


@app.get("/api/quarters")
async def get_quarters(current_user: User = Depends(get_current_user)):
    return {
        "quarters": QUARTERS,
        "default": default_quarter(date.today()),
    }


@app.get("/api/categories")
async def get_categories(
    type: TransactionType = Query(TransactionType.EXPENSE),
    platform: Platform = Query(Platform.UBER),
    selected: Optional[str] = None,
    current_user: User = Depends(get_current_user),
):
    return {
        "categories": categories_for(type, platform),
        "selected": reconcile_category(type, platform, selected),
    }


@app.get("/api/transactions")
async def get_transactions(quarter: Optional[str] = None, session=Depends(current_session)):
    quarter_filter = resolve_filter(quarter, ALL)
    transactions = session.transactions(quarter_filter)
    return {"transactions": [tx.model_dump(mode="json", by_alias=True) for tx in transactions]}


@app.post("/api/transactions", status_code=201)
async def create_transaction(entry: ManualEntry, session=Depends(current_session)):
    transaction = build_manual_transaction(entry)
    session.add_transaction(transaction)
    logger.info(f"Added manual {transaction.type.value} {transaction.id} for user {session.user.id}")
    return {"transaction": transaction.model_dump(mode="json", by_alias=True)}


@app.delete("/api/transactions/{transaction_id}")
async def delete_transaction(transaction_id: str, session=Depends(current_session)):
    removed = session.remove_transaction(transaction_id)
    if not removed:
        logger.debug(f"Transaction {transaction_id} not found, nothing to delete")
    return {"success": True, "removed": removed}


@app.get("/api/percentages")
async def get_percentages(session=Depends(current_session)):
    return session.business_percentages().model_dump(by_alias=True)


@app.put("/api/percentages")
async def update_percentages(percentages: BusinessPercentages, session=Depends(current_session)):
    session.update_percentages(percentages)
    return percentages.model_dump(by_alias=True)


@app.get("/api/gst-summary")
async def get_gst_summary(quarter: Optional[str] = None, session=Depends(current_session)):
    quarter_filter = resolve_filter(quarter, default_quarter(date.today()))
    summary = session.summary(quarter_filter)
    result = summary.model_dump(mode="json", by_alias=True)
    result["quarter"] = quarter_filter
    result["isRefund"] = summary.is_refund
    return result


@app.post("/api/extract")
async def extract_transactions(file: UploadFile = File(...), session=Depends(current_session)):
    logger.debug(f"Processing upload - Filename: {file.filename}, Content-Type: {file.content_type}")
    contents = await file.read()
    try:
        validate_document(contents, file.content_type)
    except UnsupportedDocument as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        task = session.begin_extraction(file.filename or "upload")
    except ExtractionInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        result = await run_in_threadpool(extract_document, contents, file.content_type)
    except ExtractionError as e:
        task.fail()
        logger.error(f"Extraction failed for {file.filename}: {str(e)}")
        logger.error(traceback.format_exc())
        return JSONResponse(
            status_code=502,
            content={
                "error": "No transactions added",
                "detail": str(e)
            }
        )
    except Exception as e:
        task.fail()
        logger.error(f"Unexpected error: {str(e)}")
        logger.error(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={
                "error": "Unexpected error occurred",
                "detail": str(e)
            }
        )

    added = task.complete(result.transactions)
    cancelled = added is None
    added = added or []
    return {
        "success": not cancelled,
        "cancelled": cancelled,
        "transactions": [tx.model_dump(mode="json", by_alias=True) for tx in added],
        "summaryNote": result.summary_note,
    }


@app.delete("/api/extract")
async def cancel_extraction(session=Depends(current_session)):
    if not session.cancel_extraction():
        raise HTTPException(status_code=404, detail="No extraction in progress")
    return {"success": True, "message": "Extraction cancelled"}


@app.get("/api/report")
async def generate_report(quarter: Optional[str] = None, session=Depends(current_session)):
    quarter_filter = resolve_filter(quarter, default_quarter(date.today()))
    summary = session.summary(quarter_filter)
    transactions = session.transactions(quarter_filter)
    try:
        buffer = build_gst_report(summary, transactions, session.business_percentages())
    except Exception as e:
        logger.error(f"Error generating report: {str(e)}")
        logger.error(traceback.format_exc())
        raise HTTPException(status_code=500, detail="Failed to generate report")

    suffix = "All" if quarter_filter == ALL else f"Q{quarter_filter}"
    return StreamingResponse(
        buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"attachment; filename=GST-Report-{suffix}.pdf"
        }
    )


if __name__ == "__main__":
    # Start the server
    uvicorn.run(app, host=HOST, port=PORT, **get_uvicorn_ssl_config())
