"""
Error taxonomy for the compute orchestrator.

Kinds:
- NotFoundError: a pod, deployment, preset or compute is absent (recoverable)
- ValidationError: a malformed spec, raised before any cluster call
- PresetInUseError: a preset still has live computes
- OperationTimeoutError: a deadline or poll bound elapsed
- ClusterAPIError / ConflictError: any other control-plane failure

The managers wrap lower-level errors in ComputeError / PresetError so callers
get the compute or preset context without parsing messages. Use the ``is_*``
helpers to test for a kind anywhere in the wrapping chain.
"""

from typing import Any, Iterator, Optional, Type


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class NotFoundError(OrchestratorError):
    """A cluster resource (or the preset/compute it backs) does not exist."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f" in namespace {namespace}" if namespace else ""
        super().__init__(f"{kind} {name} not found{where}")


class ValidationError(OrchestratorError):
    """A preset or compute spec failed validation."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(
            f"validation failed for field '{field}' with value '{value}': {message}"
        )


class PresetInUseError(OrchestratorError):
    """A preset cannot be deleted while its deployment has replicas."""

    def __init__(self, preset_id: str, replicas: int):
        self.preset_id = preset_id
        self.replicas = replicas
        super().__init__(
            f"cannot delete preset {preset_id}: has {replicas} active compute instances"
        )


class OperationTimeoutError(OrchestratorError, TimeoutError):
    """A cluster call deadline or a poll loop bound elapsed."""


class ClusterAPIError(OrchestratorError):
    """Any control-plane failure other than not-found, tagged with call context."""

    def __init__(
        self,
        operation: str,
        namespace: str,
        name: Optional[str] = None,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.operation = operation
        self.namespace = namespace
        self.name = name
        self.status = status
        self.reason = reason
        target = f" {name}" if name else ""
        detail = f" (status {status}: {reason})" if status else (f": {reason}" if reason else "")
        super().__init__(f"error during {operation}{target} in namespace {namespace}{detail}")


class ConflictError(ClusterAPIError):
    """The object changed since it was read (HTTP 409)."""


class ComputeError(OrchestratorError):
    """Wraps a failure with the compute id and the manager operation."""

    def __init__(self, compute_id: str, operation: str, cause: BaseException):
        self.compute_id = compute_id
        self.operation = operation
        self.cause = cause
        super().__init__(f"compute {compute_id} {operation}: {cause}")


class PresetError(OrchestratorError):
    """Wraps a failure with the preset id and the manager operation."""

    def __init__(self, preset_id: str, operation: str, cause: BaseException):
        self.preset_id = preset_id
        self.operation = operation
        self.cause = cause
        super().__init__(f"preset {preset_id} {operation}: {cause}")


def _chain(err: Optional[BaseException]) -> Iterator[BaseException]:
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = getattr(err, "cause", None) or err.__cause__


def _is(err: BaseException, kind: Type[BaseException]) -> bool:
    return any(isinstance(e, kind) for e in _chain(err))


def is_not_found(err: BaseException) -> bool:
    return _is(err, NotFoundError)


def is_validation_error(err: BaseException) -> bool:
    return _is(err, ValidationError)


def is_in_use(err: BaseException) -> bool:
    return _is(err, PresetInUseError)


def is_timeout(err: BaseException) -> bool:
    return _is(err, OperationTimeoutError)


def is_conflict(err: BaseException) -> bool:
    return _is(err, ConflictError)
