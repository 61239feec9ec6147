"""Holdings API endpoints: statement uploads, broker exports and listing."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.deps import (
    get_broker_export_parser,
    get_reconciler,
    get_statement_parser,
    require_user,
)
from config import settings
from database import get_db
from integrations.kite_client import BROKER_NAME
from integrations.parsing_utils import clean_string
from models import SyncStatus
from schemas import HoldingResponse, ParseSummaryResponse, SkippedRowResponse, UploadResponse
from services.auth_service import Caller
from services.ingestion_errors import (
    HeaderNotFoundError,
    IngestionError,
    InvalidFileError,
    MissingColumnError,
    ProcessingTimeoutError,
    TooManyRowsError,
)
from services.reconciliation_service import (
    HoldingsReconciler,
    current_holdings,
    record_sync_log,
)
from services.spreadsheet_ingestion import (
    BrokerExportParser,
    HoldingsStatementParser,
    ParseResult,
)
from utils.deadline import Deadline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/holdings", tags=["holdings"])


def _status_for(exc: IngestionError) -> int:
    if isinstance(exc, InvalidFileError):
        return exc.status_code
    if isinstance(exc, TooManyRowsError):
        return 413
    if isinstance(exc, ProcessingTimeoutError):
        return 504
    if isinstance(exc, (MissingColumnError, HeaderNotFoundError)):
        return 422
    return 400


def _resolve_source(source: Optional[str]) -> str:
    """Source label for an upload. The live broker's name is reserved."""
    resolved = clean_string(source, max_length=64) or settings.STATEMENT_SOURCE_NAME
    if resolved.lower() == BROKER_NAME.lower():
        raise HTTPException(
            status_code=400,
            detail=f'Source "{BROKER_NAME}" is reserved for the live broker connection',
        )
    return resolved


def _read_upload(file: UploadFile) -> bytes:
    # One byte over the limit is enough for the gate to reject it
    return file.file.read(settings.UPLOAD_MAX_BYTES + 1)


def _import(
    db: Session,
    user_id: str,
    source: str,
    reconciler: HoldingsReconciler,
    deadline: Deadline,
    parse,
) -> UploadResponse:
    """Parse with ``parse(deadline)`` and replace the source's holdings.

    Parse failures are logged as error sync entries here; storage failures
    are logged by the reconciler.
    """
    try:
        result: ParseResult = parse(deadline)
    except IngestionError as e:
        logger.info("Upload rejected for user %s source %s: %s", user_id, source, e)
        record_sync_log(db, user_id, source, SyncStatus.ERROR, error_message=str(e))
        raise HTTPException(status_code=_status_for(e), detail=str(e))

    skipped = [SkippedRowResponse(row_number=s.row_number, reason=s.reason) for s in result.skipped]
    if not result.holdings:
        message = "No valid holdings found in file"
        record_sync_log(db, user_id, source, SyncStatus.ERROR, error_message=message)
        raise HTTPException(
            status_code=422,
            detail={"message": message, "skipped": [s.model_dump() for s in skipped]},
        )

    try:
        reconciled = reconciler.replace_holdings(
            db, user_id, source, result.holdings, deadline=deadline,
        )
    except ProcessingTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except SQLAlchemyError:
        logger.error("Failed to store uploaded holdings for user %s", user_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to store holdings")

    summary = result.summary
    return UploadResponse(
        success=True,
        source=source,
        holdings_count=reconciled.holdings_count,
        skipped_count=len(skipped),
        skipped=skipped,
        warnings=result.warnings,
        processing_time_ms=summary.processing_time_ms,
        summary=ParseSummaryResponse.model_validate(summary),
        message=f"Imported {reconciled.holdings_count} holdings from {source}",
    )


@router.post("/upload", response_model=UploadResponse)
def upload_statement(
    file: UploadFile = File(...),
    source: Optional[str] = Form(None),
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
    parser: HoldingsStatementParser = Depends(get_statement_parser),
    reconciler: HoldingsReconciler = Depends(get_reconciler),
):
    """Import an aggregator holdings statement (.xlsx, .xls or .csv).

    Replaces every holding the caller has under ``source`` (default
    ``STATEMENT_SOURCE_NAME``). Rows that cannot be imported are returned
    in ``skipped`` with a reason.

    Raises:
        HTTPException:
            - 400 Bad Request: Empty file or reserved source name
            - 413 Payload Too Large: File or row count over the limit
            - 415 Unsupported Media Type: Not a spreadsheet
            - 422 Unprocessable Entity: No header, missing columns, or no valid rows
            - 504 Gateway Timeout: Processing budget exceeded
    """
    source = _resolve_source(source)
    file_bytes = _read_upload(file)
    deadline = Deadline(settings.PARSE_TIMEOUT_SECONDS)

    def parse(budget: Deadline) -> ParseResult:
        return parser.parse(file_bytes, file.filename, file.content_type, deadline=budget)

    return _import(db, caller.user_id, source, reconciler, deadline, parse)


@router.post("/upload/broker-export", response_model=UploadResponse)
def upload_broker_export(
    file: UploadFile = File(...),
    broker: str = Form(...),
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
    parser: BrokerExportParser = Depends(get_broker_export_parser),
    reconciler: HoldingsReconciler = Depends(get_reconciler),
):
    """Import a broker's own holdings export, stored under the broker's name."""
    source = _resolve_source(broker)
    file_bytes = _read_upload(file)
    deadline = Deadline(settings.PARSE_TIMEOUT_SECONDS)

    def parse(budget: Deadline) -> ParseResult:
        return parser.parse(file_bytes, file.filename, source, file.content_type, deadline=budget)

    return _import(db, caller.user_id, source, reconciler, deadline, parse)


@router.get("", response_model=list[HoldingResponse])
def list_holdings(
    source: Optional[str] = Query(None),
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    """List the caller's current holdings, optionally for one source."""
    return current_holdings(db, caller.user_id, source)
