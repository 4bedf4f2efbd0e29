from typing import Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class ColumnSchema(BaseModel):
    """
    Constraints for a single spreadsheet column.

    Attributes:
        name: Column header text, matched case-insensitively
        required: Whether the header and every cell value must be present
        max_length: Maximum number of characters of the trimmed value
        min_value: Lower integer bound; setting either bound makes the column numeric
        max_value: Upper integer bound
    """
    model_config = ConfigDict(frozen=True)

    name: str
    required: bool = False
    max_length: Optional[int] = None
    min_value: Optional[int] = None
    max_value: Optional[int] = None

    @property
    def has_numeric_bounds(self) -> bool:
        return self.min_value is not None or self.max_value is not None

    def matches(self, header: str) -> bool:
        return self.name.casefold() == header.casefold()


class Schema:
    """
    Read-only set of column constraints describing a dataset.

    Column order is kept for iteration only; lookups ignore case.
    """

    def __init__(self, columns: Iterable[ColumnSchema]):
        self._columns: Tuple[ColumnSchema, ...] = tuple(columns)

        seen = set()
        for column in self._columns:
            key = column.name.casefold()
            if key in seen:
                raise ValueError(f"Duplicate column '{column.name}' in schema")
            seen.add(key)

    def __iter__(self) -> Iterator[ColumnSchema]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __repr__(self) -> str:
        return f"Schema({[column.name for column in self._columns]!r})"

    @property
    def required_columns(self) -> List[ColumnSchema]:
        return [column for column in self._columns if column.required]

    def get(self, name: str) -> Optional[ColumnSchema]:
        for column in self._columns:
            if column.matches(name):
                return column
        return None


STUDENT_SCHEMA = Schema([
    ColumnSchema(name="Name", required=True, max_length=100),
    ColumnSchema(name="Age", required=True, min_value=5, max_value=100),
    ColumnSchema(name="Email", required=True, max_length=150),
    ColumnSchema(name="GraduationYear", required=True, min_value=2000, max_value=2100),
])

# Id is optional, rows that carry an existing one update that student
STUDENT_UPSERT_SCHEMA = Schema([
    ColumnSchema(name="Id", required=False, min_value=1),
    *STUDENT_SCHEMA,
])
