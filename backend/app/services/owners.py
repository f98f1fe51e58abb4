from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.account import Account

OwnerLoader = Callable[[Session, str], Any]


@dataclass(frozen=True)
class OwnerRef:
    """Typed reference to whatever entity owns entitlements, usage and payments."""

    owner_type: str
    owner_id: str

    @classmethod
    def of(cls, owner_type: str, owner_id: object) -> "OwnerRef":
        return cls(owner_type=str(owner_type), owner_id=str(owner_id))

    def __str__(self) -> str:
        return f"{self.owner_type}:{self.owner_id}"


@runtime_checkable
class HasBillingMetadata(Protocol):
    billing_metadata: dict


@runtime_checkable
class HasBillingEmail(Protocol):
    billing_email: str | None


class OwnerRegistry:
    """Maps owner types to loaders returning the concrete owner entity."""

    def __init__(self):
        self._loaders: dict[str, OwnerLoader] = {}

    def register(self, owner_type: str, loader: OwnerLoader) -> None:
        if owner_type in self._loaders:
            raise ValueError(f"Owner type '{owner_type}' is already registered")
        self._loaders[owner_type] = loader

    def types(self) -> list[str]:
        return list(self._loaders)

    def is_registered(self, owner_type: str) -> bool:
        return owner_type in self._loaders

    def load(self, db: Session, owner: OwnerRef) -> Any | None:
        loader = self._loaders.get(owner.owner_type)
        if loader is None:
            return None
        return loader(db, owner.owner_id)

    def reset(self) -> None:
        self._loaders.clear()


def load_account(db: Session, owner_id: str) -> Account | None:
    try:
        return db.get(Account, UUID(str(owner_id)))
    except ValueError:
        return None


def billing_metadata_of(entity: Any) -> dict:
    if isinstance(entity, HasBillingMetadata) and isinstance(entity.billing_metadata, dict):
        return entity.billing_metadata
    return {}


def billing_email_of(entity: Any) -> str | None:
    if isinstance(entity, HasBillingEmail):
        return entity.billing_email or None
    return None
