"""
Valora — Dispatch Registry.

Maps operation names to async handlers. Every call goes through the same
boundary: the arguments are validated against the operation's pydantic
model, the handler runs, and whatever happens comes back as an
OperationResult. The only exception that escapes is UnknownOperation from
`execute()`; `dispatch()` turns even that into a failed result.

The registry is built once at startup, then frozen and shared read-only.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

import pydantic

from valora.core.results import OperationResult
from valora.core.transcript import OperationRequest
from valora.errors import (
    NOT_FOUND,
    TECHNICAL_ERROR,
    UNKNOWN_OPERATION,
    VALIDATION_ERROR,
    NotFoundError,
    UnknownOperation,
    ValidationError,
    ValoraError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationContext:
    """Per-turn facts every handler may need."""

    tenant_id: str
    now: datetime


Handler = Callable[[Any, OperationContext], Awaitable[Any]]


@dataclass(frozen=True)
class OperationSpec:
    name: str
    handler: Handler
    args_model: type[pydantic.BaseModel]
    description: str


# Keys the engines either reject or don't need.
_DROPPED_SCHEMA_KEYS = {"title", "default", "format", "$defs"}


def _simplify_schema(schema: dict, defs: dict) -> dict:
    """Inline $refs and collapse Optional[...] unions into plain types."""
    if "$ref" in schema:
        target = defs[schema["$ref"].rsplit("/", 1)[-1]]
        rest = {k: v for k, v in schema.items() if k != "$ref"}
        return _simplify_schema({**target, **rest}, defs)

    if "anyOf" in schema:
        options = [s for s in schema["anyOf"] if s.get("type") != "null"]
        if len(options) == 1:
            rest = {k: v for k, v in schema.items() if k != "anyOf"}
            return _simplify_schema({**options[0], **rest}, defs)

    simplified: dict = {}
    for key, value in schema.items():
        if key in _DROPPED_SCHEMA_KEYS:
            continue
        if key == "properties":
            simplified[key] = {name: _simplify_schema(prop, defs) for name, prop in value.items()}
        elif key == "items" and isinstance(value, dict):
            simplified[key] = _simplify_schema(value, defs)
        else:
            simplified[key] = value
    return simplified


def _format_pydantic_errors(exc: pydantic.ValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        problems.append(f"{location}: {error['msg']}" if location else error["msg"])
    return problems


class DispatchRegistry:
    """Name → handler map with a uniform result boundary."""

    def __init__(self) -> None:
        self._specs: dict[str, OperationSpec] | Mapping[str, OperationSpec] = {}
        self._frozen = False

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        handler: Handler,
        args_model: type[pydantic.BaseModel],
        description: str,
    ) -> None:
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register '{name}'")
        if name in self._specs:
            raise ValueError(f"Operation '{name}' is already registered")
        self._specs[name] = OperationSpec(name, handler, args_model, description)
        logger.debug("Registered operation %s", name)

    def freeze(self) -> None:
        """Make the registry read-only."""
        if not self._frozen:
            self._specs = MappingProxyType(dict(self._specs))
            self._frozen = True
            logger.info("Dispatch registry frozen with %d operations", len(self._specs))

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def declarations(self) -> list[dict]:
        """Function declarations for the reasoning engine, in registration order."""
        declarations = []
        for spec in self._specs.values():
            schema = spec.args_model.model_json_schema()
            parameters = _simplify_schema(schema, schema.get("$defs", {}))
            parameters.pop("description", None)    # model docstring
            parameters.setdefault("properties", {})
            declarations.append({
                "name": spec.name,
                "description": spec.description,
                "parameters": parameters,
            })
        return declarations

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def execute(
        self, name: str, args: dict | None, context: OperationContext,
    ) -> OperationResult:
        """Validate *args* and run the handler registered under *name*.

        Raises:
            UnknownOperation: *name* was never registered.
        """
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownOperation(name)

        try:
            parsed = spec.args_model.model_validate(args or {})
        except pydantic.ValidationError as exc:
            problems = _format_pydantic_errors(exc)
            logger.warning("Invalid arguments for %s: %s", name, problems)
            return OperationResult.failure(
                name,
                f"Invalid arguments for {name}",
                VALIDATION_ERROR,
                details=str(exc),
                validation_errors=problems,
            )

        try:
            result = await spec.handler(parsed, context)
        except ValidationError as exc:
            logger.warning("Validation failed in %s: %s", name, exc.errors)
            return OperationResult.failure(
                name, str(exc), VALIDATION_ERROR, validation_errors=exc.errors,
            )
        except NotFoundError as exc:
            logger.info("%s: %s", name, exc)
            return OperationResult.failure(name, str(exc), NOT_FOUND)
        except Exception as exc:
            code = exc.code if isinstance(exc, ValoraError) else TECHNICAL_ERROR
            logger.exception("Operation %s failed", name)
            return OperationResult.failure(
                name,
                f"A technical error occurred while running {name.replace('_', ' ')}. "
                "Please try again.",
                code,
                details=f"{type(exc).__name__}: {exc}",
            )

        if not isinstance(result, OperationResult):
            result = OperationResult.ok(name, "Operation completed", payload=result)
        elif result.name != name:
            result = dataclasses.replace(result, name=name)
        return result

    async def dispatch(
        self, request: OperationRequest, context: OperationContext,
    ) -> OperationResult:
        """Like `execute()` but never raises; the result carries the call id."""
        try:
            result = await self.execute(request.name, request.args, context)
        except UnknownOperation as exc:
            logger.warning("Engine requested unknown operation %r", request.name)
            result = OperationResult.failure(request.name, str(exc), UNKNOWN_OPERATION)
        return dataclasses.replace(result, call_id=request.call_id)
