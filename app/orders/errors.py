from typing import Optional


class OrderError(Exception):
    """Base for every failure the order engine reports to its callers."""

    code = "ORDER_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_state, to_state, reason: Optional[str] = None) -> None:
        self.from_state = getattr(from_state, "value", from_state)
        self.to_state = getattr(to_state, "value", to_state)
        message = f"Transicao invalida: {self.from_state} -> {self.to_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, {"from_state": self.from_state, "to_state": self.to_state})


class ConflictError(OrderError):
    code = "CONFLICT"


class NotFoundError(OrderError):
    code = "NOT_FOUND"


class DependencyError(OrderError):
    code = "DEPENDENCY_ERROR"
