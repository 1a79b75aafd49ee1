"""
Error kinds and validation results for the POS Records API.

Every service failure is one of three kinds, and the HTTP layer maps each kind
to a status code:

- ValidationError: one or more rule violations (client fault, 400)
- NotFoundError: the referenced record does not exist (404)
- InfrastructureError: the store is unreachable or failed (server fault, 500)
"""
from dataclasses import dataclass, field
from typing import Any, Generic, List, Tuple, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    # model fields the rule reads
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    violations: List[Violation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return False

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]


ValidationResult = Union[Ok[Any], Invalid]


class PosError(Exception):
    """Base class for errors raised by the services."""


class ValidationError(PosError):
    def __init__(self, violations: List[Violation]):
        self.violations = list(violations)
        super().__init__("Validation failed: " + ", ".join(v.message for v in self.violations))

    @property
    def codes(self) -> List[str]:
        return [v.code for v in self.violations]


class NotFoundError(PosError):
    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(f"{entity} not found")


class InfrastructureError(PosError):
    pass


def from_pydantic(exc) -> ValidationError:
    """Convert a pydantic ValidationError into our own, keeping every error."""
    violations = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        message = f"{loc}: {err['msg']}" if loc else err["msg"]
        violations.append(Violation(code=err["type"], message=message))
    return ValidationError(violations)
