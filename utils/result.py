from typing import Generic, TypeVar, Optional, Callable, Any, Dict, List, Union
from http import HTTPStatus

T = TypeVar('T')  # Generic type variable
U = TypeVar('U')  # Additional type variable for chained operations

class Result(Generic[T]):
    """
    A generic result class that represents the outcome of an upload step.

    A Result either carries data, or describes a failure with a single error
    message and/or a list of validation errors, together with the HTTP status
    the failure should be reported with.

    Attributes:
        success (bool): Indicates if the operation was successful
        data (Optional[T]): The result data (only present when success is True)
        error (Optional[str]): Error message (only present when success is False)
        errors (List[str]): Row and header validation messages of a failed validation
        status_code (HTTPStatus): HTTP status code (default: 200 for success, 400 for failure)
    """
    def __init__(
        self,
        success: bool,
        data: Optional[T] = None,
        error: Optional[str] = None,
        errors: Optional[List[str]] = None,
        status_code: Optional[Union[int, HTTPStatus]] = None
    ):
        self.success = success
        self.data = data
        self.error = error
        self.errors = list(errors) if errors else []

        # Set default status code based on success/failure if not provided
        if status_code is None:
            self.status_code = HTTPStatus.OK if success else HTTPStatus.BAD_REQUEST
        else:
            self.status_code = HTTPStatus(status_code)

    @classmethod
    def ok(cls, data: T, status_code: Optional[Union[int, HTTPStatus]] = HTTPStatus.OK) -> "Result[T]":
        """
        Create a successful Result with the provided data.

        Args:
            data (T): The data to be wrapped in the Result
            status_code (Optional[Union[int, HTTPStatus]], optional): HTTP status code. Defaults to 200 OK.

        Returns:
            Result[T]: A successful Result containing the provided data
        """
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: Optional[Union[int, HTTPStatus]] = HTTPStatus.BAD_REQUEST) -> "Result[T]":
        """
        Create a failed Result with the provided error message.

        Args:
            error (str): The error message describing the failure
            status_code (Optional[Union[int, HTTPStatus]], optional): HTTP status code. Defaults to 400 BAD_REQUEST.

        Returns:
            Result[T]: A failed Result containing the error message
        """
        return cls(success=False, error=error, status_code=status_code)

    @classmethod
    def invalid_input(cls, error: str = "Invalid input data") -> "Result[T]":
        """
        Create a failed Result with BAD_REQUEST status code.

        Args:
            error (str, optional): The error message. Defaults to "Invalid input data".

        Returns:
            Result[T]: A failed Result with 400 status code
        """
        return cls(success=False, error=error, status_code=HTTPStatus.BAD_REQUEST)

    @classmethod
    def invalid_rows(cls, errors: List[str]) -> "Result[T]":
        """
        Create a failed Result holding the messages of a failed workbook validation.

        Args:
            errors (List[str]): Header and row validation messages, in the order they were found

        Returns:
            Result[T]: A failed Result with 400 status code
        """
        return cls(success=False, errors=errors, status_code=HTTPStatus.BAD_REQUEST)

    def is_success(self) -> bool:
        return self.success

    def is_failure(self) -> bool:
        return not self.success

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert Result to a dictionary suitable for API responses.

        Returns:
            Dict[str, Any]: Dictionary containing status, status_code, data/error/errors
        """
        response = {
            "success": self.success,
            "status_code": self.status_code.value,
            "status": self.status_code.phrase
        }

        if self.is_success():
            response["data"] = self.data
        else:
            if self.error is not None:
                response["error"] = self.error
            if self.errors:
                response["errors"] = self.errors

        return response

    def __str__(self) -> str:
        status_info = f"{self.status_code.value} {self.status_code.phrase}"
        if self.is_success():
            data_repr = str(self.data)
            # Truncate long data representations
            if len(data_repr) > 100:
                data_repr = f"{data_repr[:97]}..."
            return f"Success ({status_info}): {data_repr}"
        if self.errors:
            return f"Failure ({status_info}): {len(self.errors)} validation error(s)"
        return f"Failure ({status_info}): {self.error}"

    def __repr__(self) -> str:
        return (
            f"Result(success={self.success}, status_code={self.status_code!r}, "
            f"data={self.data!r}, error={self.error!r}, errors={self.errors!r})"
        )

    def and_then(self, fn: Callable[[T], "Result[U]"]) -> "Result[U]":
        """
        Chain operations that return Result objects.

        If this Result is a failure, it short-circuits and returns a failure with
        the same error, errors and status code. If it's a success, it applies the
        function to the data and returns the new Result.

        Args:
            fn (Callable[[T], Result[U]]): Function that takes the success data and returns a new Result

        Returns:
            Result[U]: Either the original failure or the new Result from the function
        """
        if not self.is_success():
            return Result(success=False, error=self.error, errors=self.errors, status_code=self.status_code)
        return fn(self.data)  # type: ignore
