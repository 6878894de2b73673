from __future__ import annotations


class LoanError(RuntimeError):
    """Base class for failures reported by the loan core."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class NotFound(LoanError):
    status_code = 404


class Forbidden(LoanError):
    status_code = 403


class InvalidWindow(LoanError):
    status_code = 400


class NoEligibleMembers(LoanError):
    status_code = 409


class Conflict(LoanError):
    """Concurrent write detected; the caller should retry."""

    status_code = 409


class TransitionRejected(LoanError):
    status_code = 409

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid state transition: {current} -> {target}")

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["current"] = self.current
        payload["target"] = self.target
        return payload
