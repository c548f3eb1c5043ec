from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class BOMEngineError(Exception):
    """
    Base exception for the BOM engine.

    Every error exposes:
    - attributes: message/code/details/user_message/severity/retryable
    - method: to_dict()
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "BOM_ENGINE_ERROR",
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        severity: str = "ERROR",
        retryable: bool = False,
    ) -> None:
        self.message = message
        self.code = code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        self.severity = severity
        self.retryable = retryable
        super().__init__(self.message)

    @property
    def error_kind(self) -> str:
        return self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(BOMEngineError):
    def __init__(
        self,
        message: str,
        *,
        errors: Optional[Sequence[Dict[str, Any]]] = None,
        warnings: Optional[Sequence[Dict[str, Any]]] = None,
        **kwargs: Any,
    ):
        details: Dict[str, Any] = {
            "errors": list(errors or []),
            "warnings": list(warnings or []),
        }
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details=details,
            user_message=f"Validation failed: {message}",
        )

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return self.details["errors"]

    @property
    def warnings(self) -> List[Dict[str, Any]]:
        return self.details["warnings"]


class ConfigurationUnsupportedError(BOMEngineError):
    def __init__(self, message: str, reason: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"reason": reason} if reason else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_UNSUPPORTED",
            details=details,
            user_message=f"Configuration is not supported: {message}",
        )


class CycleDetectedError(BOMEngineError):
    """Raised when the assembly graph of one snapshot contains a cycle."""

    def __init__(self, cycle_path: Sequence[str], **kwargs: Any):
        self.cycle_path = list(cycle_path)
        path_str = " -> ".join(self.cycle_path)
        details: Dict[str, Any] = {"cycle_path": self.cycle_path}
        details.update(kwargs)
        super().__init__(
            message=f"Cycle detected: {path_str}",
            code="CYCLE_DETECTED",
            details=details,
            user_message="Catalog data integrity fault: assembly structure is cyclic",
            severity="CRITICAL",
        )


class SubstitutionUnresolvedError(BOMEngineError):
    def __init__(self, group: str, assembly_id: str, candidates: Sequence[str] = ()):
        super().__init__(
            message=f"No valid candidate for substitution group '{group}' in assembly {assembly_id}",
            code="SUBSTITUTION_UNRESOLVED",
            details={
                "substitute_group": group,
                "assembly_id": assembly_id,
                "candidates": list(candidates),
            },
        )


class GenerationTimeoutError(BOMEngineError):
    def __init__(self, timeout_seconds: float, configuration_id: Optional[str] = None):
        super().__init__(
            message=f"BOM generation exceeded {timeout_seconds:g}s",
            code="GENERATION_TIMEOUT",
            details={
                "timeout_seconds": timeout_seconds,
                "configuration_id": configuration_id,
            },
            user_message="BOM generation timed out; retry to use a fresh catalog snapshot",
            retryable=True,
        )


class ConcurrencyConflictError(BOMEngineError):
    def __init__(self, configuration_id: str):
        super().__init__(
            message=f"A generation for configuration {configuration_id} is already in flight",
            code="CONCURRENCY_CONFLICT",
            details={"configuration_id": configuration_id},
            user_message="BOM generation already running for this configuration; await its result",
            retryable=True,
        )


class RuleDefinitionError(BOMEngineError):
    def __init__(self, message: str, rule: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"rule": rule} if rule else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="RULE_DEFINITION_ERROR",
            details=details,
            user_message="Business rule definition is invalid",
        )


class StateTransitionError(BOMEngineError):
    def __init__(self, from_state: str, to_state: str, resource: Optional[str] = None, **kwargs: Any):
        message = f"Transition {from_state} -> {to_state} is not allowed"
        if resource:
            message += f" for {resource}"
        details: Dict[str, Any] = {
            "from_state": from_state,
            "to_state": to_state,
            "resource": resource,
        }
        details.update(kwargs)
        super().__init__(
            message=message,
            code="INVALID_STATE_TRANSITION",
            details=details,
        )


class ImmutableBOMError(BOMEngineError):
    def __init__(self, state: str, resource: Optional[str] = None, **kwargs: Any):
        message = f"BOM is locked in state: {state}"
        details: Dict[str, Any] = {"state": state, "resource": resource}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="BOM_IMMUTABLE",
            details=details,
            user_message=message,
        )


class NotFoundError(BOMEngineError):
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} {identifier} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )
