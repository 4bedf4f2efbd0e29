"""
Student Excel Import Application

This package provides an API for importing students from Excel files.
It validates uploaded workbooks against a column schema, stores the
valid rows in the students table and exports the table back to Excel.

Key modules:
- main.py: FastAPI application with API endpoints
- column_schema.py: Column constraints and the student schemas
- excel_validator.py: Workbook validation against a schema
- excel_file_process.py: Upload checks, Excel reading and writing
- students.py: Data access for the students table
- utils/result.py: Result pattern implementation for error handling
"""
