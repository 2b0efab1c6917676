# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Error kinds raised inside the room engine.

Engine operations catch these at their boundary and hand back a failed
ActionResult carrying `kind` and the message. The HTTP layer maps `kind`
to a status code.
"""

from dataclasses import dataclass, field

class EngineError(Exception):
    kind = "error"
    http_status = 500


class NotFound(EngineError):
    """Room, participant, or dispute absent."""
    kind = "not_found"
    http_status = 404


class InvalidPhase(EngineError):
    """Action attempted outside its required step."""
    kind = "invalid_phase"
    http_status = 409


class Forbidden(EngineError):
    """Actor's role does not match what the action requires."""
    kind = "forbidden"
    http_status = 403


class ValidationError(EngineError):
    """Malformed amount, address, or enum value."""
    kind = "validation"
    http_status = 400


class ExternalFailure(EngineError):
    """Settlement gateway call failed. Step left unchanged, safe to retry."""
    kind = "external"
    http_status = 502


ERROR_KINDS = {cls.kind: cls for cls in (NotFound, InvalidPhase, Forbidden, ValidationError, ExternalFailure)}


@dataclass
class ActionResult:
    """Outcome of one engine operation. Failures carry the error kind."""

    ok: bool
    error: str | None = None
    kind: str | None = None
    data: dict = field(default_factory=dict)

    @classmethod
    def success(cls, **data) -> "ActionResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, exc: EngineError, **data) -> "ActionResult":
        return cls(ok=False, error=str(exc), kind=exc.kind, data=data)

    def to_dict(self) -> dict:
        out = {"ok": self.ok, "data": self.data}
        if not self.ok:
            out["error"] = self.error
            out["kind"] = self.kind
        return out
