"""
Contact property schema.

Every write through a PropertyStore is validated here first. A rejected
write raises ValidationError and leaves the store untouched.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from flows_core.definitions.wallclock import get_zone
from flows_core.errors import ValidationError

PropertyType = Literal["string", "integer", "number", "boolean", "datetime", "timezone", "any"]


@dataclass(frozen=True)
class PropertySpec:
    key: str
    type: PropertyType = "string"
    choices: tuple[Any, ...] | None = None
    allow_blank: bool = False
    nullable: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PropertySpec":
        choices = data.get("choices")
        return cls(
            key=data["key"],
            type=data.get("type", "string"),
            choices=tuple(choices) if choices is not None else None,
            allow_blank=bool(data.get("allow_blank", False)),
            nullable=bool(data.get("nullable", True)),
        )


@dataclass
class PropertySchema:
    specs: dict[str, PropertySpec] = field(default_factory=dict)
    allow_unknown: bool = False

    @classmethod
    def of(cls, *specs: PropertySpec, allow_unknown: bool = False) -> "PropertySchema":
        return cls(specs={s.key: s for s in specs}, allow_unknown=allow_unknown)

    @classmethod
    def permissive(cls) -> "PropertySchema":
        return cls(allow_unknown=True)

    def add(self, spec: PropertySpec) -> None:
        self.specs[spec.key] = spec

    def validate(self, key: str, value: Any) -> Any:
        """Return the normalized value, or raise ValidationError."""
        spec = self.specs.get(key)
        if spec is None:
            if self.allow_unknown:
                return value
            raise ValidationError(key, "unknown property", value)

        if value is None:
            if spec.nullable:
                return None
            raise ValidationError(key, "value is required", value)

        normalized = self._check_type(spec, value)

        if spec.choices is not None and normalized not in spec.choices:
            raise ValidationError(key, f"must be one of {list(spec.choices)}", value)
        return normalized

    def _check_type(self, spec: PropertySpec, value: Any) -> Any:
        key = spec.key
        if spec.type == "any":
            return value
        if spec.type == "string":
            if not isinstance(value, str):
                raise ValidationError(key, "expected a string", value)
            if not spec.allow_blank and not value.strip():
                raise ValidationError(key, "must not be blank", value)
            return value
        if spec.type == "integer":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(key, "expected an integer", value)
            return value
        if spec.type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(key, "expected a number", value)
            return value
        if spec.type == "boolean":
            if not isinstance(value, bool):
                raise ValidationError(key, "expected a boolean", value)
            return value
        if spec.type == "datetime":
            if isinstance(value, str):
                try:
                    value = datetime.fromisoformat(value)
                except ValueError:
                    raise ValidationError(key, "expected an ISO-8601 datetime", value) from None
            if not isinstance(value, datetime):
                raise ValidationError(key, "expected a datetime", value)
            if value.tzinfo is None:
                raise ValidationError(key, "datetime must be timezone-aware", value)
            return value
        if spec.type == "timezone":
            if not isinstance(value, str):
                raise ValidationError(key, "expected an IANA timezone name", value)
            try:
                get_zone(value)
            except ValueError:
                raise ValidationError(key, "unknown timezone", value) from None
            return value
        raise ValidationError(key, f"unsupported property type {spec.type}", value)
