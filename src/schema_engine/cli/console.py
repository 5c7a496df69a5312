"""Interactive console - JSON-lines request/response over a stream pair.

One request per line, one response per line:

    {"type": "evaluate", "id": 1, "data": {"expr": {"op": "validate", "type": "billing.Invoice", "value": {...}}}}
    {"type": "result", "request_id": 1, "data": {"accepted": false, "filled": {...}, "violations": [...]}}

Every request is evaluated against the registry's graph snapshot taken when
the request arrives.
"""

import json
from typing import IO, Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from schema_engine import api
from schema_engine.config.settings import EngineSettings
from schema_engine.errors import (
    ConflictError,
    TransitionError,
    UnknownReferenceError,
    UnknownStateError,
)
from schema_engine.packages.registry import GraphRegistry
from schema_engine.schemas.canonical import to_document

log = structlog.get_logger(__name__)


class EvaluateExpr(BaseModel):
    """The operation an ``evaluate`` request asks for."""

    op: Literal["validate", "unify", "transitions", "check_transition", "matrix", "reload"]
    type: str | None = Field(default=None, description="Type to validate against")
    value: Any = Field(default=None, description="Value to validate")
    timeout: float | None = Field(default=None, gt=0, description="Validation timeout in seconds")
    left: str | None = Field(default=None, description="First type to unify")
    right: str | None = Field(default=None, description="Second type to unify")
    machine: str | None = Field(default=None, description="State machine name")
    state: str | None = Field(default=None, description="Current state")
    target: str | None = Field(default=None, description="Requested next state")
    allow_self_loop: bool | None = Field(default=None, description="Override the self-loop policy")


class RequestData(BaseModel):
    expr: EvaluateExpr | None = None


class Request(BaseModel):
    """One console request."""

    type: Literal["evaluate", "ping"]
    id: str | int | None = None
    data: RequestData = Field(default_factory=RequestData)


class Response(BaseModel):
    """One console response."""

    type: Literal["result", "error", "pong"]
    request_id: str | int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ConsoleError(Exception):
    """A request could not be answered."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _require(expr: EvaluateExpr, *names: str) -> None:
    missing = [n for n in names if getattr(expr, n) is None]
    if missing:
        raise ConsoleError("bad_request", f"'{expr.op}' needs: {', '.join(missing)}")


class ConsoleSession:
    """Answers console requests against a GraphRegistry."""

    def __init__(self, registry: GraphRegistry, settings: EngineSettings | None = None):
        self.registry = registry
        self.settings = settings or registry.settings

    def handle_line(self, line: str) -> str:
        """Answer one raw request line with one response line."""
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            return self._error(None, "bad_request", f"invalid JSON: {e}").model_dump_json()
        return self.handle(payload).model_dump_json()

    def handle(self, payload: Any) -> Response:
        """Answer one decoded request."""
        request_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(request_id, (str, int)):
            request_id = None
        try:
            request = Request.model_validate(payload)
        except ValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            return self._error(request_id, "bad_request", reasons)

        if request.type == "ping":
            return Response(type="pong", request_id=request.id)
        if request.data.expr is None:
            return self._error(request.id, "bad_request", "evaluate needs data.expr")

        try:
            data = self._evaluate(request.data.expr)
        except ConsoleError as e:
            return self._error(request.id, e.code, e.message)
        except ConflictError as e:
            return self._error(request.id, "conflict", str(e), path=e.path)
        except UnknownStateError as e:
            return self._error(request.id, "unknown_state", str(e))
        except UnknownReferenceError as e:
            return self._error(request.id, "unknown_reference", str(e))
        except ValueError as e:
            return self._error(request.id, "invalid_value", str(e))
        return Response(type="result", request_id=request.id, data=data)

    def run(self, stdin: IO[str], stdout: IO[str]) -> None:
        """Serve requests until end of input. Blank lines are ignored."""
        for line in stdin:
            if not line.strip():
                continue
            stdout.write(self.handle_line(line) + "\n")
            stdout.flush()

    # -------------------------------------------------------------------------

    def _evaluate(self, expr: EvaluateExpr) -> dict[str, Any]:
        if expr.op == "reload":
            result = self.registry.reload()
            return {
                "swapped": result.swapped,
                "generation": result.graph.generation if result.graph else None,
                "errors": [e.to_dict() for e in result.errors],
                "drift": [r.to_dict() for r in result.drift if r.status.value != "unchanged"],
            }

        try:
            graph = self.registry.snapshot()
        except RuntimeError as e:
            raise ConsoleError("not_loaded", str(e))

        if expr.op == "validate":
            _require(expr, "type")
            result = api.validate(graph, expr.type, expr.value, timeout=expr.timeout, settings=self.settings)
            return result.to_dict()

        if expr.op == "unify":
            _require(expr, "left", "right")
            unified = api.unify(graph, expr.left, expr.right)
            return {"type": to_document(unified)}

        if expr.op == "transitions":
            _require(expr, "machine", "state")
            targets = api.transitions(graph, expr.machine, expr.state, expr.allow_self_loop, self.settings)
            return {"machine": expr.machine, "state": expr.state, "targets": targets, "terminal": not targets}

        if expr.op == "check_transition":
            _require(expr, "machine", "state", "target")
            try:
                api.check_transition(
                    graph, expr.machine, expr.state, expr.target, expr.allow_self_loop, self.settings
                )
            except TransitionError as e:
                return {"allowed": False, "reason": e.reason}
            return {"allowed": True}

        _require(expr, "machine")
        matrix = api.enumerate_transition_matrix(graph, expr.machine, expr.allow_self_loop, self.settings)
        return matrix.to_dict()

    def _error(self, request_id: Any, code: str, message: str, **extra: Any) -> Response:
        log.debug("console_request_failed", request_id=request_id, code=code, message=message)
        return Response(type="error", request_id=request_id, data={"code": code, "message": message, **extra})
