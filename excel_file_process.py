import io
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional
from http import HTTPStatus

import pandas as pd
from pydantic import BaseModel

from column_schema import Schema
from config import settings
from excel_validator import (
    ErrorPolicy,
    ExcelValidator,
    SheetRow,
    ValidatedRow,
    Workbook,
    Worksheet,
)
from utils.result import Result

# Configure logger with more structured format
logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXPORT_COLUMNS = ["Id", "Name", "Age", "Email", "GraduationYear"]


class LogContext:
    """
    Context manager that logs one stage of an upload and how long it took.

    Attributes:
        stage: Name of the stage, e.g. "workbook read"
        request_id: Id shared by every stage of one upload
        duration: Seconds the stage took, set when the block exits
    """
    def __init__(self, stage: str, request_id: Optional[str] = None, **context):
        self.stage = stage
        self.request_id = request_id or str(uuid.uuid4())[:8]
        self.context = context
        self.duration: Optional[float] = None
        self._started = 0.0

    def _extra(self) -> Dict[str, Any]:
        extra = {"request_id": self.request_id, "stage": self.stage, **self.context}
        if self.duration is not None:
            extra["duration"] = self.duration
        return extra

    def __enter__(self):
        self._started = time.perf_counter()
        logger.info(f"Starting {self.stage}", extra=self._extra())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._started
        if exc_type is None:
            logger.info(f"Completed {self.stage} in {self.duration:.2f}s", extra=self._extra())
            return
        logger.error(
            f"Failed {self.stage} in {self.duration:.2f}s: {exc_val}",
            extra=self._extra(),
            exc_info=(exc_type, exc_val, exc_tb)
        )


class UploadRequest(BaseModel):
    """
    An uploaded spreadsheet, fully buffered in memory.

    Attributes:
        filename: Client-side file name
        content_type: MIME type reported by the client
        content: Raw file bytes
    """
    filename: Optional[str] = None
    content_type: Optional[str] = None
    content: bytes = b""


def _cell_text(value: Any) -> str:
    # openpyxl hands integral numbers over as int, so 20 reads back as "20"
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value)


def read_workbook(content: bytes) -> Workbook:
    """
    Parse .xlsx bytes into the in-memory tabular form the validator consumes.

    Every sheet is read without a header, untyped and without NA detection,
    so cells like "NA" stay text. Rows without any cell value are dropped, so
    each worksheet only lists its used rows, numbered by their position in the
    sheet. A cell holding only spaces counts as used.

    Args:
        content: Raw .xlsx file bytes

    Returns:
        Workbook with one Worksheet per sheet, in workbook order

    Raises:
        Exception: Whatever pandas/openpyxl raise for a corrupt byte stream
    """
    sheets = pd.read_excel(
        io.BytesIO(content),
        sheet_name=None,
        header=None,
        dtype=object,
        keep_default_na=False,
        engine="openpyxl",
    )

    worksheets = []
    for sheet_name, df in sheets.items():
        rows = []
        for position, (_, values) in enumerate(df.iterrows(), start=1):
            cells = [_cell_text(value) for value in values]
            if not any(cells):
                continue
            rows.append(SheetRow(number=position, cells=cells))
        worksheets.append(Worksheet(name=str(sheet_name), rows=rows))

    return Workbook(worksheets=worksheets)


def export_students(records: Iterable[Dict[str, Any]]) -> bytes:
    """
    Serialize student records into a single-sheet .xlsx file.

    Args:
        records: Mappings keyed by the export column names

    Returns:
        The .xlsx file as bytes, columns in EXPORT_COLUMNS order
    """
    df = pd.DataFrame(list(records), columns=EXPORT_COLUMNS)
    buffer = io.BytesIO()
    df.to_excel(buffer, sheet_name="Students", index=False, engine="openpyxl")
    return buffer.getvalue()


# Excel upload processor with enhanced error handling
class FileProcessor:
    """
    Handles spreadsheet upload validation.

    This class contains methods to:
    - Check the upload (presence, extension, content type, size)
    - Read the workbook from the uploaded bytes
    - Validate its rows against a column schema
    """

    @staticmethod
    def process_upload(
        upload: UploadRequest,
        schema: Schema,
        policy: ErrorPolicy = ErrorPolicy.HALT_ON_FIRST_ERROR,
    ) -> Result[List[ValidatedRow]]:
        """
        Validate an uploaded spreadsheet against a schema.

        Args:
            upload: The buffered upload
            schema: Column constraints to validate rows against
            policy: Whether to stop at the first invalid row

        Returns:
            Result[List[ValidatedRow]]: The validated rows, or the reason the upload was rejected
        """
        request_id = str(uuid.uuid4())[:8]
        log_context = {
            "request_id": request_id,
            "upload_name": upload.filename,
            "size_bytes": len(upload.content),
            "policy": policy.value,
        }

        logger.info("Processing spreadsheet upload", extra=log_context)

        with LogContext("upload check", **log_context):
            result = FileProcessor._check_upload(upload)

        if result.is_success():
            with LogContext("workbook read", **log_context):
                result = result.and_then(FileProcessor._read_workbook)

        if result.is_success():
            with LogContext("row validation", **log_context):
                result = result.and_then(lambda workbook: FileProcessor._validate_rows(workbook, schema, policy))

        if result.is_success():
            logger.info(f"Validated {len(result.data)} rows", extra=log_context)
        else:
            logger.warning(f"Upload rejected: {result}", extra=log_context)

        return result

    @staticmethod
    def _check_upload(upload: UploadRequest) -> Result[bytes]:
        """
        Checks the upload is a non-empty .xlsx file within the size limit.

        Args:
            upload: The buffered upload

        Returns:
            Result containing the file bytes or the rejection message
        """
        if not upload.content:
            return Result.invalid_input("No file uploaded.")

        if not (upload.filename or "").lower().endswith(".xlsx"):
            return Result.invalid_input("The uploaded file is not a valid Excel (.xlsx) file. Wrong extension.")

        if "spreadsheet" not in (upload.content_type or ""):
            return Result.invalid_input("The uploaded file is not a valid Excel (.xlsx) file.")

        if len(upload.content) > settings.MAX_UPLOAD_BYTES:
            return Result.invalid_input(f"File size exceeds {settings.MAX_UPLOAD_BYTES // 1024} KB limit.")

        return Result.ok(upload.content)

    @staticmethod
    def _read_workbook(content: bytes) -> Result[Workbook]:
        try:
            start_time = time.time()
            workbook = read_workbook(content)
            read_time = time.time() - start_time
            logger.info(
                "Successfully read workbook",
                extra={
                    "sheet_count": len(workbook.worksheets),
                    "read_time_seconds": f"{read_time:.2f}"
                }
            )
            return Result.ok(workbook)
        except Exception as e:
            logger.error(
                "Failed to read workbook",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            return Result.fail(f"Failed to process Excel file: {str(e)}", status_code=HTTPStatus.BAD_REQUEST)

    @staticmethod
    def _validate_rows(workbook: Workbook, schema: Schema, policy: ErrorPolicy) -> Result[List[ValidatedRow]]:
        validation = ExcelValidator(schema, policy).validate_workbook(workbook)
        if not validation.is_valid:
            return Result.invalid_rows(validation.errors)
        return Result.ok(validation.rows)
