from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from app.core.hooks import LifecycleHooks
from app.services.owners import OwnerRegistry, load_account
from app.services.payment_provider import PaymentProvider, WirePaymentProvider
from app.services.provider_registry import ProviderRegistry
from app.services.settings_resolver import SettingsResolver, entitlements_schema
from app.services.stripe_provider import StripePaymentProvider

DEFAULT_PROVIDERS: tuple[type[PaymentProvider], ...] = (WirePaymentProvider, StripePaymentProvider)


@dataclass
class EntitlementsRuntime:
    """Everything the services need besides the database session.

    One instance is built at startup and passed explicitly; tests build their
    own and call ``reset`` between cases.
    """

    settings: SettingsResolver
    providers: ProviderRegistry
    owners: OwnerRegistry
    hooks: LifecycleHooks = field(default_factory=LifecycleHooks)

    def setting(self, key: str) -> Any:
        return self.settings.get(f"entitlements.{key}")

    def reset(self) -> None:
        self.providers.reset()
        self.settings.reset()
        self.owners.reset()
        self.hooks.reset()


def build_runtime(
    *,
    initial_settings: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    providers: Iterable[type[PaymentProvider]] = DEFAULT_PROVIDERS,
    hooks: LifecycleHooks | None = None,
) -> EntitlementsRuntime:
    resolver = SettingsResolver(initial=initial_settings, environ=environ)
    resolver.register(entitlements_schema())

    owners = OwnerRegistry()
    owners.register("Account", load_account)

    registry = ProviderRegistry(resolver)
    for provider_class in providers:
        registry.register(provider_class)

    return EntitlementsRuntime(
        settings=resolver,
        providers=registry,
        owners=owners,
        hooks=hooks or LifecycleHooks(),
    )
