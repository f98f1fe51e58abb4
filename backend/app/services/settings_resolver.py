from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pydantic import TypeAdapter

logger = logging.getLogger(__name__)

SETTING_TYPES = {"string", "integer", "float", "boolean", "array"}
_ADAPTERS: dict[str, TypeAdapter] = {
    "integer": TypeAdapter(int),
    "float": TypeAdapter(float),
    "boolean": TypeAdapter(bool),
    "array": TypeAdapter(list[str]),
}

ChangeCallback = Callable[[Any, Any], None]


@dataclass(frozen=True)
class SettingDefinition:
    key: str
    type: str = "string"
    default: Any = None
    description: str = ""
    required: bool = False
    encrypted: bool = False

    def __post_init__(self):
        if not self.key:
            raise ValueError("setting key is required")
        if self.type not in SETTING_TYPES:
            raise ValueError(f"Unknown setting type '{self.type}' for {self.key}")

    def with_prefix(self, prefix: str) -> "SettingDefinition":
        return SettingDefinition(
            key=f"{prefix}.{self.key}",
            type=self.type,
            default=self.default,
            description=self.description,
            required=self.required,
            encrypted=self.encrypted,
        )


@dataclass
class SettingsSchema:
    category: str
    definitions: list[SettingDefinition] = field(default_factory=list)

    def add(self, definition: SettingDefinition) -> "SettingsSchema":
        self.definitions.append(definition)
        return self

    def keys(self) -> list[str]:
        return [d.key for d in self.definitions]

    def find(self, key: str) -> SettingDefinition | None:
        for definition in self.definitions:
            if definition.key == key:
                return definition
        return None

    def defaults(self) -> dict[str, Any]:
        return {d.key: d.default for d in self.definitions}

    def merge(self, other: "SettingsSchema") -> "SettingsSchema":
        if other.category != self.category:
            raise ValueError("Cannot merge schemas from different categories")
        return SettingsSchema(self.category, [*self.definitions, *other.definitions])


def cast_value(value: Any, setting_type: str | None) -> Any:
    """Coerce a raw string into ``setting_type``; raises ``ValueError`` when it does not parse."""
    adapter = _ADAPTERS.get(setting_type or "")
    if not isinstance(value, str) or adapter is None:
        return value
    raw: Any = value.strip()
    if setting_type == "array":
        raw = [part.strip() for part in raw.split(",") if part.strip()]
    return adapter.validate_python(raw)


def _split_key(full_key: str) -> tuple[str, str]:
    if "." not in full_key:
        raise ValueError(f"Setting key must be '<category>.<key>': {full_key!r}")
    category, key = full_key.split(".", 1)
    return category, key


class SettingsResolver:
    """Typed key/value configuration keyed as ``<category>.<key>``.

    Lookup order: runtime overrides (``set``), initial values given at
    construction, environment variables, then the schema default. Environment
    names are the full key upper-cased with dots replaced by underscores, e.g.
    ``entitlements.providers.stripe.secret_key`` reads
    ``ENTITLEMENTS_PROVIDERS_STRIPE_SECRET_KEY``.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None):
        self._initial = dict(initial or {})
        self._environ = environ if environ is not None else os.environ
        self._schemas: dict[str, SettingsSchema] = {}
        self._overrides: dict[str, Any] = {}
        self._callbacks: dict[str, list[ChangeCallback]] = {}
        self._cache: dict[str, Any] = {}

    # schema registry

    def register(self, schema: SettingsSchema) -> SettingsSchema:
        existing = self._schemas.get(schema.category)
        self._schemas[schema.category] = existing.merge(schema) if existing else schema
        self.invalidate()
        return self._schemas[schema.category]

    def schema_for(self, category: str) -> SettingsSchema | None:
        return self._schemas.get(category)

    def categories(self) -> list[str]:
        return list(self._schemas)

    def find_definition(self, full_key: str) -> SettingDefinition | None:
        category, key = _split_key(full_key)
        schema = self._schemas.get(category)
        return schema.find(key) if schema else None

    # values

    def get(self, full_key: str) -> Any:
        if full_key in self._cache:
            return self._cache[full_key]
        value = self._resolve(full_key)
        self._cache[full_key] = value
        return value

    def set(self, full_key: str, value: Any) -> Any:
        old_value = self.get(full_key)
        definition = self.find_definition(full_key)
        new_value = cast_value(value, definition.type if definition else None)
        self._overrides[full_key] = new_value
        self.invalidate(full_key)
        if old_value != new_value:
            for callback in self._callbacks.get(full_key, []):
                callback(old_value, new_value)
        return new_value

    def for_category(self, category: str) -> dict[str, Any]:
        schema = self._schemas.get(category)
        if schema is None:
            return {}
        return {key: self.get(f"{category}.{key}") for key in schema.keys()}

    def on_change(self, full_key: str, callback: ChangeCallback) -> None:
        self._callbacks.setdefault(full_key, []).append(callback)

    def invalidate(self, full_key: str | None = None) -> None:
        if full_key is None:
            self._cache.clear()
        else:
            self._cache.pop(full_key, None)

    def reset(self) -> None:
        self._schemas.clear()
        self._overrides.clear()
        self._callbacks.clear()
        self._cache.clear()

    def _resolve(self, full_key: str) -> Any:
        definition = self.find_definition(full_key)
        setting_type = definition.type if definition else None

        if full_key in self._overrides:
            return self._overrides[full_key]

        if full_key in self._initial and self._initial[full_key] is not None:
            return cast_value(self._initial[full_key], setting_type)

        env_value = self._environ.get(full_key.replace(".", "_").upper())
        if env_value:
            try:
                return cast_value(env_value, setting_type)
            except ValueError:
                logger.warning("Ignoring unparseable environment value for %s", full_key)

        return definition.default if definition else None


def entitlements_schema() -> SettingsSchema:
    schema = SettingsSchema("entitlements")
    schema.add(SettingDefinition("default_currency", "string", "usd", "Default currency code"))
    schema.add(SettingDefinition("trial_days", "integer", 14, "Default trial period in days"))
    schema.add(SettingDefinition("grace_period_days", "integer", 3, "Grace period after entitlement expiry (days)"))
    schema.add(
        SettingDefinition(
            "auto_create_counters",
            "boolean",
            True,
            "Create usage counters when an entitlement becomes active",
        )
    )
    schema.add(
        SettingDefinition(
            "on_plan_change_usage",
            "string",
            "continue",
            "Usage on plan change: 'continue' carries the count over, 'reset' starts at zero",
        )
    )
    schema.add(
        SettingDefinition("payment_request_expiry_hours", "integer", 72, "Default expiry for payment requests (hours)")
    )
    return schema
