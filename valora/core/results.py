"""Uniform operation result shape shared by every handler."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


def jsonable(value: Any) -> Any:
    """Coerce *value* into plain JSON types (dates and decimals become strings)."""
    return json.loads(json.dumps(value, default=str))


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    details: str = ""                          # internal, logs only
    validation_errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation, fed back to the reasoning engine.

    `message` is safe to show the user. `error.details` stays internal and
    is stripped by `to_dict()`.
    """

    name: str
    success: bool
    message: str
    payload: Any = None
    error: ErrorInfo | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)
    call_id: str = ""

    @classmethod
    def ok(
        cls,
        name: str,
        message: str,
        payload: Any = None,
        warnings: list[str] | tuple[str, ...] = (),
    ) -> OperationResult:
        return cls(name=name, success=True, message=message, payload=payload, warnings=tuple(warnings))

    @classmethod
    def failure(
        cls,
        name: str,
        message: str,
        code: str,
        details: str = "",
        validation_errors: list[str] | tuple[str, ...] = (),
    ) -> OperationResult:
        return cls(
            name=name,
            success=False,
            message=message,
            error=ErrorInfo(code=code, details=details, validation_errors=tuple(validation_errors)),
        )

    def to_dict(self) -> dict:
        """Engine-facing (and persistable) form. Internal details are dropped."""
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.success:
            data["data"] = jsonable(self.payload)
        else:
            data["error"] = {"code": self.error.code if self.error else "UNKNOWN_ERROR"}
            if self.error and self.error.validation_errors:
                data["error"]["validation_errors"] = list(self.error.validation_errors)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict, call_id: str = "") -> OperationResult:
        error = None
        if not data.get("success"):
            raw_error = data.get("error") or {}
            error = ErrorInfo(
                code=raw_error.get("code", "UNKNOWN_ERROR"),
                validation_errors=tuple(raw_error.get("validation_errors", ())),
            )
        return cls(
            name=name,
            success=bool(data.get("success")),
            message=data.get("message", ""),
            payload=data.get("data"),
            error=error,
            warnings=tuple(data.get("warnings", ())),
            call_id=call_id,
        )
