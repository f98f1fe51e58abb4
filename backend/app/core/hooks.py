from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Callable

Callback = Callable[..., Any]


@dataclass
class LifecycleHooks:
    """Host application callbacks. Unset callbacks are skipped.

    after_entitlement_changed(entitlement, old_status, new_status)
    after_usage_limit_reached(counter)
    after_plan_changed(owner_ref, old_plan, new_plan)
    after_payment_request_changed(payment_request, old_status, new_status)
    """

    after_entitlement_changed: Callback | None = None
    after_usage_limit_reached: Callback | None = None
    after_plan_changed: Callback | None = None
    after_payment_request_changed: Callback | None = None

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, None)
