import io
from unittest.mock import patch

import openpyxl
import pandas as pd
import pytest
from fastapi.testclient import TestClient

# Import the app and its collaborators from main.py
import main
from main import app
from database import get_db
from excel_file_process import XLSX_CONTENT_TYPE, EXPORT_COLUMNS
from models import Student
from students import list_students

STUDENT_HEADER = ["Name", "Age", "Email", "GraduationYear"]


def build_xlsx(rows):
    """
    Build a single-sheet .xlsx file in memory.

    Args:
        rows: Lists of cell values, the first one being the header

    Returns:
        bytes: The workbook file content
    """
    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = "Students"
    for row in rows:
        worksheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def xlsx_file(rows, filename="students.xlsx", content_type=XLSX_CONTENT_TYPE):
    return {"file": (filename, build_xlsx(rows), content_type)}


@pytest.fixture
def client(session_factory):
    """
    Fixture providing a TestClient whose requests use the in-memory database.

    Args:
        session_factory: Fixture providing sessions on a fresh in-memory database

    Returns:
        TestClient: Client for the FastAPI app
    """
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stored_names(session_factory):
    """
    Fixture providing a function that lists the names of the stored students.

    Returns:
        Callable[[], List[str]]: Names ordered by student id
    """
    def names():
        with session_factory() as session:
            return [student.name for student in list_students(session)]
    return names


@pytest.fixture
def seeded(session_factory):
    """Fixture storing students 1 to 3 before the request is made."""
    with session_factory() as session:
        session.add_all([
            Student(id=1, name="Ann", age=20, email="ann@x.com", graduation_year=2025),
            Student(id=2, name="Bob", age=21, email="bob@x.com", graduation_year=2026),
            Student(id=3, name="Cid", age=22, email="cid@x.com", graduation_year=2027),
        ])
        session.commit()


class TestUploadEndpoint:
    """
    Tests for POST /api/student/upload.
    """

    def test_valid_file_inserts_students(self, client, stored_names):
        """
        Test that a valid spreadsheet is stored row by row.

        This test verifies the end-to-end path: upload, validation and insert.
        """
        files = xlsx_file([STUDENT_HEADER, ["Ann", 20, "ann@x.com", 2025], ["Bob", "21", "bob@x.com", "2026"]])

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"message": "Inserted 2 students.", "inserted": 2}
        assert stored_names() == ["Ann", "Bob"]

    def test_missing_required_value_is_rejected(self, client, stored_names):
        files = xlsx_file([STUDENT_HEADER, ["", 20, "ann@x.com", 2025]])

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["errors"] == ["Row 2: 'Name' is required."]
        assert stored_names() == []

    def test_first_invalid_row_rejects_the_whole_file(self, client, stored_names):
        """
        Test the default fail-fast behavior.

        Row 3 is invalid; row 4 is never checked and the valid row 2 is not
        stored either, because any error prevents the insert.
        """
        files = xlsx_file([
            STUDENT_HEADER,
            ["Ann", 20, "ann@x.com", 2025],
            ["Bob", 200, "bob@x.com", 2025],
            ["", "abc", "cid@x.com", 2025],
        ])

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["errors"] == ["Row 3: 'Age' must be at most 100."]
        assert stored_names() == []

    def test_collect_all_errors_reports_every_row(self, client, stored_names):
        files = xlsx_file([
            STUDENT_HEADER,
            ["Ann", 20, "ann@x.com", 2025],
            ["Bob", 200, "bob@x.com", 2025],
            ["Cid", "abc", "cid@x.com", 2025],
        ])

        response = client.post("/api/student/upload?collect_all_errors=true", files=files)

        assert response.status_code == 400
        assert response.json()["errors"] == [
            "Row 3: 'Age' must be at most 100.",
            "Row 4: 'Age' must be a valid integer.",
        ]
        assert stored_names() == []

    def test_missing_header_columns(self, client):
        files = xlsx_file([["Name", "Email"], ["Ann", "ann@x.com"]])

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["errors"] == [
            "Column 'Age' is missing in the header row.",
            "Column 'GraduationYear' is missing in the header row.",
        ]

    def test_header_only_file(self, client):
        response = client.post("/api/student/upload", files=xlsx_file([STUDENT_HEADER]))

        assert response.status_code == 400
        assert response.json()["errors"] == ["The worksheet does not contain any data rows."]

    def test_appends_by_default(self, client, seeded, stored_names):
        response = client.post("/api/student/upload", files=xlsx_file([STUDENT_HEADER, ["Dee", 20, "dee@x.com", 2025]]))

        assert response.status_code == 200
        assert stored_names() == ["Ann", "Bob", "Cid", "Dee"]

    def test_replace_all_clears_existing_students(self, client, seeded, stored_names):
        response = client.post(
            "/api/student/upload?replace_all=true",
            files=xlsx_file([STUDENT_HEADER, ["Dee", 20, "dee@x.com", 2025]])
        )

        assert response.status_code == 200
        assert stored_names() == ["Dee"]

    def test_invalid_file_keeps_existing_students_with_replace_all(self, client, seeded, stored_names):
        response = client.post(
            "/api/student/upload?replace_all=true",
            files=xlsx_file([STUDENT_HEADER, ["Dee", 3, "dee@x.com", 2025]])
        )

        assert response.status_code == 400
        assert stored_names() == ["Ann", "Bob", "Cid"]

    def test_without_file(self, client):
        response = client.post("/api/student/upload")

        assert response.status_code == 400
        assert response.json()["error"] == "No file uploaded."

    @pytest.mark.parametrize(
        "filename, content_type, expected_error",
        [
            ("students.csv", XLSX_CONTENT_TYPE, "The uploaded file is not a valid Excel (.xlsx) file. Wrong extension."),
            ("students.xlsx", "application/octet-stream", "The uploaded file is not a valid Excel (.xlsx) file."),
        ],
        ids=["wrong-extension", "wrong-content-type"]
    )
    def test_rejects_non_xlsx_uploads(self, client, filename, content_type, expected_error):
        files = xlsx_file([STUDENT_HEADER, ["Ann", 20, "ann@x.com", 2025]], filename=filename, content_type=content_type)

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["error"] == expected_error

    def test_corrupt_file(self, client):
        files = {"file": ("students.xlsx", b"this is not a spreadsheet", XLSX_CONTENT_TYPE)}

        response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["error"].startswith("Failed to process Excel file: ")

    def test_database_failure_is_reported_and_rolled_back(self, client, stored_names):
        """
        Test that an exception while storing students becomes a 400 response.
        """
        files = xlsx_file([STUDENT_HEADER, ["Ann", 20, "ann@x.com", 2025]])

        with patch.object(main.student_repository, "insert_students", side_effect=Exception("database is locked")), \
             patch.object(main.logger, "exception") as mock_log:
            response = client.post("/api/student/upload", files=files)

        assert response.status_code == 400
        assert response.json()["error"] == "Failed to process Excel file: database is locked"
        mock_log.assert_called_once()
        assert stored_names() == []


class TestUpsertEndpoint:
    """
    Tests for POST /api/student/upload-upsert.
    """

    def test_existing_id_updates_in_place(self, client, seeded, session_factory):
        """
        Test that a row whose Id exists updates that student and is not counted as inserted.
        """
        files = xlsx_file([["Id"] + STUDENT_HEADER, [3, "Carla", 40, "carla@x.com", 2030]])

        response = client.post("/api/student/upload-upsert", files=files)

        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Upsert complete.", "inserted": 0}
        with session_factory() as session:
            carla = session.get(Student, 3)
            assert (carla.name, carla.age, carla.email, carla.graduation_year) == ("Carla", 40, "carla@x.com", 2030)
            assert len(list_students(session)) == 3

    def test_mixed_rows(self, client, seeded, session_factory):
        files = xlsx_file([
            ["Id"] + STUDENT_HEADER,
            [1, "Ann2", 20, "ann@x.com", 2025],
            [None, "Eve", 20, "eve@x.com", 2025],
            [42, "Zed", 20, "zed@x.com", 2025],
        ])

        response = client.post("/api/student/upload-upsert", files=files)

        assert response.status_code == 200
        assert response.json()["data"]["inserted"] == 2
        with session_factory() as session:
            assert session.get(Student, 1).name == "Ann2"
            assert session.get(Student, 42).name == "Zed"
            assert len(list_students(session)) == 5

    def test_id_column_is_optional(self, client, seeded, stored_names):
        response = client.post("/api/student/upload-upsert", files=xlsx_file([STUDENT_HEADER, ["Dee", 20, "dee@x.com", 2025]]))

        assert response.status_code == 200
        assert response.json()["data"]["inserted"] == 1
        assert stored_names() == ["Ann", "Bob", "Cid", "Dee"]

    def test_zero_id_is_rejected(self, client, seeded, stored_names):
        files = xlsx_file([["Id"] + STUDENT_HEADER, [0, "Dee", 20, "dee@x.com", 2025]])

        response = client.post("/api/student/upload-upsert", files=files)

        assert response.status_code == 400
        assert response.json()["errors"] == ["Row 2: 'Id' must be at least 1."]
        assert stored_names() == ["Ann", "Bob", "Cid"]

    def test_without_file(self, client):
        response = client.post("/api/student/upload-upsert")

        assert response.status_code == 400
        assert response.json()["error"] == "No file uploaded."


class TestDownloadEndpoint:
    """
    Tests for GET /api/student/download.
    """

    def test_exports_every_student(self, client, seeded):
        response = client.get("/api/student/download")

        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_CONTENT_TYPE
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="students-')
        assert disposition.endswith('.xlsx"')

        df = pd.read_excel(io.BytesIO(response.content))
        assert list(df.columns) == EXPORT_COLUMNS
        assert df["Id"].tolist() == [1, 2, 3]
        assert df["Name"].tolist() == ["Ann", "Bob", "Cid"]
        assert df["GraduationYear"].tolist() == [2025, 2026, 2027]

    def test_empty_table_exports_header_only(self, client):
        response = client.get("/api/student/download")

        df = pd.read_excel(io.BytesIO(response.content))
        assert list(df.columns) == EXPORT_COLUMNS
        assert df.empty

    def test_uploaded_rows_round_trip_through_download(self, client):
        client.post("/api/student/upload", files=xlsx_file([STUDENT_HEADER, ["Ann", 20, "ann@x.com", 2025]]))

        df = pd.read_excel(io.BytesIO(client.get("/api/student/download").content))

        assert df.drop(columns=["Id"]).to_dict("records") == [
            {"Name": "Ann", "Age": 20, "Email": "ann@x.com", "GraduationYear": 2025}
        ]


def test_docs_are_served():
    assert TestClient(app).get("/openapi.json").json()["info"]["title"] == "Student Excel Import API"


@pytest.mark.parametrize(
    "collect_all_errors, expected",
    [(False, "halt_on_first_error"), (True, "collect_all_errors")],
    ids=["default", "collect"]
)
def test_error_policy(collect_all_errors, expected):
    assert main.error_policy(collect_all_errors).value == expected
