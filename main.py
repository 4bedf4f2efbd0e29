from contextlib import asynccontextmanager
from typing import Optional
import os
import logging
from datetime import datetime

from fastapi import FastAPI, Depends, File, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from column_schema import STUDENT_SCHEMA, STUDENT_UPSERT_SCHEMA
from config import settings
from database import get_db, init_db
from excel_file_process import FileProcessor, UploadRequest, XLSX_CONTENT_TYPE, export_students
from excel_validator import ErrorPolicy
from utils.result import Result
import students as student_repository


# Create logs directory if it doesn't exist
log_dir = settings.LOG_DIR
if not os.path.isabs(log_dir):
    log_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), log_dir)
os.makedirs(log_dir, exist_ok=True)

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Add file handler to write logs to file
log_file_path = os.path.join(log_dir, f"app_{datetime.now().strftime('%Y%m%d')}.log")
file_handler = logging.FileHandler(log_file_path)
file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
logging.getLogger().addHandler(file_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database tables ready")
    yield


# Initialize FastAPI app with metadata
app = FastAPI(
    title="Student Excel Import API",
    description="API for validating Excel uploads and importing them into the students table",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_policy(collect_all_errors: bool) -> ErrorPolicy:
    if collect_all_errors:
        return ErrorPolicy.COLLECT_ALL_ERRORS
    return ErrorPolicy.HALT_ON_FIRST_ERROR


async def read_upload(file: Optional[UploadFile]) -> UploadRequest:
    """
    Buffer an uploaded file in memory.

    Args:
        file: The multipart upload, None when the request carried no file

    Returns:
        UploadRequest with empty content when nothing was uploaded
    """
    if file is None:
        return UploadRequest()
    content = await file.read()
    return UploadRequest(filename=file.filename, content_type=file.content_type, content=content)


def to_response(result: Result) -> JSONResponse:
    return JSONResponse(status_code=result.status_code.value, content=result.to_dict())


def persistence_failure(db: Session, exc: Exception) -> JSONResponse:
    """Roll back the request's session and report the failure as a bad request."""
    db.rollback()
    logger.exception(f"Failed to store students: {str(exc)}")
    return to_response(Result.fail(f"Failed to process Excel file: {str(exc)}"))


# API Endpoints
@app.post(
    "/api/student/upload",
    tags=["Student"]
)
async def upload_students(
    file: Optional[UploadFile] = File(None),
    replace_all: bool = Query(False, description="Delete all existing students before inserting"),
    collect_all_errors: bool = Query(False, description="Report errors of every row instead of stopping at the first invalid row"),
    db: Session = Depends(get_db)
):
    """
    Validate an .xlsx upload and insert one student per row.

    The first sheet must have a header row with Name, Age, Email and
    GraduationYear columns. Nothing is stored when any row is invalid.

    Returns:
        dict: Result envelope whose data holds the message and inserted count,
        or whose error/errors explain why the upload was rejected
    """
    upload = await read_upload(file)
    result = FileProcessor.process_upload(upload, STUDENT_SCHEMA, error_policy(collect_all_errors))
    if result.is_failure():
        return to_response(result)

    try:
        inserted = student_repository.insert_students(db, result.data, replace_all=replace_all)
        db.commit()
    except Exception as e:
        return persistence_failure(db, e)

    logger.info(f"Inserted {len(inserted)} students", extra={"replace_all": replace_all})
    return to_response(Result.ok({
        "message": f"Inserted {len(inserted)} students.",
        "inserted": len(inserted)
    }))


@app.post(
    "/api/student/upload-upsert",
    tags=["Student"]
)
async def upsert_students(
    file: Optional[UploadFile] = File(None),
    collect_all_errors: bool = Query(False, description="Report errors of every row instead of stopping at the first invalid row"),
    db: Session = Depends(get_db)
):
    """
    Validate an .xlsx upload and insert or update students.

    Rows whose optional Id column holds the id of an existing student update
    that student; every other row is inserted.

    Returns:
        dict: Result envelope whose data holds the message and inserted count
    """
    upload = await read_upload(file)
    result = FileProcessor.process_upload(upload, STUDENT_UPSERT_SCHEMA, error_policy(collect_all_errors))
    if result.is_failure():
        return to_response(result)

    try:
        inserted = student_repository.upsert_students(db, result.data)
        db.commit()
    except Exception as e:
        return persistence_failure(db, e)

    return to_response(Result.ok({"message": "Upsert complete.", "inserted": inserted}))


@app.get(
    "/api/student/download",
    tags=["Student"]
)
def download_students(db: Session = Depends(get_db)):
    """
    Export every stored student as an .xlsx file.

    Columns are Id, Name, Age, Email and GraduationYear, one row per student.
    """
    records = [
        {
            "Id": student.id,
            "Name": student.name,
            "Age": student.age,
            "Email": student.email,
            "GraduationYear": student.graduation_year,
        }
        for student in student_repository.list_students(db)
    ]
    content = export_students(records)
    file_name = f"students-{datetime.now().strftime('%Y%m%d%H%M%S')}.xlsx"
    logger.info(f"Exported {len(records)} students", extra={"export_name": file_name})

    return Response(
        content=content,
        media_type=XLSX_CONTENT_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'}
    )


# Run the application if executed directly
if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Student Excel Import API in development mode.")
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
