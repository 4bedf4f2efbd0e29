"""
Student repository containing all data-access operations for the students table.

Repository rules:
- Pure data-access logic only
- Every function receives a Session explicitly
- Functions flush, but never commit
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from excel_validator import ValidatedRow
from models import Student

logger = logging.getLogger(__name__)


def _apply_row(student: Student, row: ValidatedRow) -> Student:
    student.name = str(row["Name"])
    student.age = int(row["Age"])
    student.email = str(row["Email"])
    student.graduation_year = int(row["GraduationYear"])
    return student


def _row_id(row: ValidatedRow) -> Optional[int]:
    """Return the row's Id when it is a positive integer."""
    value = row.get("Id")
    if isinstance(value, int) and value > 0:
        return value
    return None


def insert_students(db: Session, rows: Iterable[ValidatedRow], *, replace_all: bool = False) -> List[Student]:
    """Insert one student per validated row, optionally deleting every existing student first."""
    if replace_all:
        deleted = db.execute(delete(Student)).rowcount
        logger.info(f"Removed {deleted} existing students")

    students = [_apply_row(Student(), row) for row in rows]
    db.add_all(students)
    db.flush()
    return students


def upsert_students(db: Session, rows: Iterable[ValidatedRow]) -> int:
    """
    Update students whose Id already exists and insert the rest.

    A row with a positive Id that matches no student is inserted with that Id.
    Rows without a usable Id get a generated one.

    Returns:
        The number of inserted students; updates are not counted
    """
    new_students: List[Student] = []
    updated = 0

    for row in rows:
        student_id = _row_id(row)
        if student_id is not None:
            existing = db.get(Student, student_id)
            if existing is not None:
                _apply_row(existing, row)
                updated += 1
                continue
            new_students.append(_apply_row(Student(id=student_id), row))
        else:
            new_students.append(_apply_row(Student(), row))

    if new_students:
        db.add_all(new_students)
    db.flush()

    logger.info(f"Upserted students: {len(new_students)} inserted, {updated} updated")
    return len(new_students)


def list_students(db: Session) -> List[Student]:
    """List every student ordered by id."""
    return list(db.scalars(select(Student).order_by(Student.id)).all())
