import logging
import re
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from column_schema import ColumnSchema, Schema

logger = logging.getLogger(__name__)

CellValue = Union[int, str]
ValidatedRow = Dict[str, CellValue]

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


class SheetRow(BaseModel):
    """
    A used row of a worksheet.

    Attributes:
        number: 1-based row number as shown in the spreadsheet
        cells: Cell texts by 0-based column position, "" for empty cells
    """
    number: int
    cells: List[str] = Field(default_factory=list)

    def cell(self, index: int) -> str:
        if 0 <= index < len(self.cells):
            return self.cells[index]
        return ""


class Worksheet(BaseModel):
    name: str = "Sheet1"
    rows: List[SheetRow] = Field(default_factory=list)


class Workbook(BaseModel):
    worksheets: List[Worksheet] = Field(default_factory=list)


class ErrorPolicy(str, Enum):
    """How row scanning reacts to the first invalid row."""
    HALT_ON_FIRST_ERROR = "halt_on_first_error"
    COLLECT_ALL_ERRORS = "collect_all_errors"


class ValidationResult(BaseModel):
    """
    Outcome of validating a workbook.

    When errors is non-empty, rows is incomplete and must not be persisted.
    """
    rows: List[ValidatedRow] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def text_length(value: str) -> int:
    """Length in UTF-16 code units, so characters outside the BMP count twice."""
    return len(value.encode("utf-16-le")) // 2


def parse_int32(value: str) -> Optional[int]:
    """Parse a trimmed cell value as a signed 32-bit integer, None when it isn't one."""
    if not _INTEGER_PATTERN.fullmatch(value):
        return None
    number = int(value)
    if number < INT32_MIN or number > INT32_MAX:
        return None
    return number


class ExcelValidator:
    """
    Validates the first worksheet of a workbook against a column schema.

    The first used row is the header, even when blank rows sit above it, so a
    sheet whose headers start on row 2 is accepted. Headers are matched to
    schema columns case-insensitively and unknown headers are ignored. Every
    following used row is checked column by column and turned into a
    ValidatedRow. Max lengths count UTF-16 code units, as Excel does.

    With ErrorPolicy.HALT_ON_FIRST_ERROR (the default) the scan stops at the
    first invalid row, so only that row's errors are reported and later rows
    are never returned. ErrorPolicy.COLLECT_ALL_ERRORS keeps scanning and
    reports the errors of every row.
    """

    def __init__(self, schema: Schema, policy: ErrorPolicy = ErrorPolicy.HALT_ON_FIRST_ERROR):
        self.schema = schema
        self.policy = policy

    def validate_workbook(self, workbook: Workbook) -> ValidationResult:
        errors: List[str] = []
        valid_rows: List[ValidatedRow] = []

        if not workbook.worksheets:
            errors.append("The workbook does not contain any worksheets.")
            return ValidationResult(rows=valid_rows, errors=errors)

        worksheet = workbook.worksheets[0]
        if not worksheet.rows:
            errors.append("The worksheet does not contain any data.")
            return ValidationResult(rows=valid_rows, errors=errors)

        column_indices = self._map_header(worksheet.rows[0])

        for column in self.schema.required_columns:
            if column.name.casefold() not in column_indices:
                errors.append(f"Column '{column.name}' is missing in the header row.")

        if errors:
            logger.warning("Header validation failed", extra={"sheet": worksheet.name, "errors": errors})
            return ValidationResult(rows=valid_rows, errors=errors)

        data_rows = worksheet.rows[1:]
        if not data_rows:
            errors.append("The worksheet does not contain any data rows.")
            return ValidationResult(rows=valid_rows, errors=errors)

        for row in data_rows:
            row_data: ValidatedRow = {}
            is_valid_row = True

            for column in self.schema:
                col_index = column_indices.get(column.name.casefold())
                if col_index is None:
                    if column.required:
                        errors.append(f"Column '{column.name}' is missing in the header row.")
                        return ValidationResult(rows=valid_rows, errors=errors)
                    continue

                cell_value = row.cell(col_index).strip()
                error = self._check_cell(column, cell_value, row.number, row_data)
                if error:
                    errors.append(error)
                    is_valid_row = False

            if is_valid_row:
                valid_rows.append(row_data)
            elif self.policy is ErrorPolicy.HALT_ON_FIRST_ERROR:
                logger.info(
                    "Stopped row scan at first invalid row",
                    extra={"sheet": worksheet.name, "row": row.number, "errors": errors},
                )
                return ValidationResult(rows=valid_rows, errors=errors)

        logger.info(
            "Validated worksheet",
            extra={"sheet": worksheet.name, "valid_rows": len(valid_rows), "error_count": len(errors)},
        )
        return ValidationResult(rows=valid_rows, errors=errors)

    def _map_header(self, header_row: SheetRow) -> Dict[str, int]:
        # casefolded header -> 0-based column position, schema columns only
        column_indices: Dict[str, int] = {}
        for index, header in enumerate(header_row.cells):
            header = header.strip()
            if header and header in self.schema:
                column_indices[header.casefold()] = index
        return column_indices

    @staticmethod
    def _check_cell(column: ColumnSchema, cell_value: str, row_number: int, row_data: ValidatedRow) -> Optional[str]:
        """
        Check one trimmed cell value and store it in row_data when it passes.

        Returns:
            The row-scoped error message, or None when the value is valid
        """
        if column.required and not cell_value:
            return f"Row {row_number}: '{column.name}' is required."

        if column.max_length is not None and cell_value and text_length(cell_value) > column.max_length:
            return f"Row {row_number}: '{column.name}' exceeds max length of {column.max_length}."

        if column.has_numeric_bounds and cell_value:
            number = parse_int32(cell_value)
            if number is None:
                return f"Row {row_number}: '{column.name}' must be a valid integer."
            if column.min_value is not None and number < column.min_value:
                return f"Row {row_number}: '{column.name}' must be at least {column.min_value}."
            if column.max_value is not None and number > column.max_value:
                return f"Row {row_number}: '{column.name}' must be at most {column.max_value}."
            row_data[column.name] = number
        elif column.name not in row_data:
            row_data[column.name] = cell_value

        return None
