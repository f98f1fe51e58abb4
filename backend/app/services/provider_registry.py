from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.errors import ProviderRegistrationError
from app.services.payment_provider import PaymentProvider
from app.services.settings_resolver import SettingDefinition, SettingsResolver, SettingsSchema

logger = logging.getLogger(__name__)

SETTINGS_CATEGORY = "entitlements"


def provider_setting_key(provider_key: str, name: str) -> str:
    return f"{SETTINGS_CATEGORY}.providers.{provider_key}.{name}"


@dataclass(frozen=True)
class ProviderDefinition:
    key: str
    label: str
    provider_class: type[PaymentProvider]
    manual_resolution: bool
    admin_actions: tuple[str, ...]
    refundable: bool

    @classmethod
    def build_from(cls, provider_class: type[PaymentProvider]) -> "ProviderDefinition":
        return cls(
            key=provider_class.provider_key,
            label=provider_class.provider_label,
            provider_class=provider_class,
            manual_resolution=bool(provider_class.manual_resolution),
            admin_actions=tuple(provider_class.admin_actions),
            refundable=bool(provider_class.refundable),
        )


class ProviderRegistry:
    def __init__(self, settings: SettingsResolver):
        self._settings = settings
        self._definitions: dict[str, ProviderDefinition] = {}

    def register(self, provider_class: type[PaymentProvider]) -> ProviderDefinition:
        if not (isinstance(provider_class, type) and issubclass(provider_class, PaymentProvider)):
            raise ProviderRegistrationError(f"{provider_class!r} must subclass PaymentProvider")

        key = provider_class.provider_key
        if not key:
            raise ProviderRegistrationError(f"{provider_class.__name__} does not declare a provider_key")
        if key in self._definitions:
            raise ProviderRegistrationError(f"Provider key :{key} is already registered")

        self._register_settings(provider_class)
        self._validate_required_settings(provider_class)

        definition = ProviderDefinition.build_from(provider_class)
        self._definitions[key] = definition
        logger.info("Registered payment provider %s", key)
        return definition

    def find(self, key: str | None) -> ProviderDefinition | None:
        if not key:
            return None
        return self._definitions.get(str(key))

    def all(self) -> list[ProviderDefinition]:
        return list(self._definitions.values())

    def keys(self) -> list[str]:
        return list(self._definitions)

    def is_enabled(self, key: str) -> bool:
        if key not in self._definitions:
            return False
        return self._settings.get(provider_setting_key(key, "enabled")) is not False

    def enabled(self) -> list[ProviderDefinition]:
        return [d for d in self.all() if self.is_enabled(d.key)]

    def for_select(self) -> list[tuple[str, str]]:
        return [(d.label, d.key) for d in self.enabled()]

    def reset(self) -> None:
        self._definitions.clear()

    def _register_settings(self, provider_class: type[PaymentProvider]) -> None:
        key = provider_class.provider_key
        declared = list(provider_class.settings_schema)
        schema = SettingsSchema(SETTINGS_CATEGORY)

        if not any(d.key == "enabled" for d in declared):
            schema.add(
                SettingDefinition(
                    f"providers.{key}.enabled",
                    "boolean",
                    True,
                    f"Enable {provider_class.provider_label} provider",
                )
            )
        for definition in declared:
            schema.add(definition.with_prefix(f"providers.{key}"))

        self._settings.register(schema)

    def _validate_required_settings(self, provider_class: type[PaymentProvider]) -> None:
        key = provider_class.provider_key
        required = list(provider_class.required_settings)
        required += [d.key for d in provider_class.settings_schema if d.required and d.key not in required]
        missing = []
        for name in required:
            value = self._settings.get(provider_setting_key(key, name))
            if value is None or value == "":
                missing.append(name)
        if missing:
            raise ProviderRegistrationError(
                f"Provider :{key} has required settings that are not configured: {', '.join(missing)}"
            )
