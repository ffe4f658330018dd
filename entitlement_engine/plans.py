"""Plan catalog: per-period usage limits for each plan tier.

Limits are expressed in generations per billing period::

    none:       0
    prototype:  40
    operator:   150
    foundry:    600

The entitlement record caches the resolved limit in ``usage_limit`` so that
the metering hot path never needs this table; the reconciler refreshes the
cached value whenever the plan changes.
"""

from __future__ import annotations

from collections.abc import Mapping

from entitlement_engine.models.entitlement import PlanTier

_DEFAULT_LIMITS: dict[PlanTier, int] = {
    PlanTier.NONE: 0,
    PlanTier.PROTOTYPE: 40,
    PlanTier.OPERATOR: 150,
    PlanTier.FOUNDRY: 600,
}


class PlanCatalog:
    """Lookup from plan tier to usage limit, with optional per-deployment overrides.

    Parameters
    ----------
    overrides:
        Mapping of plan name (e.g. ``"operator"``) to limit.  Unknown plan
        names raise :class:`ValueError` so that typos in configuration fail
        at start-up instead of silently granting the default.
    """

    def __init__(self, overrides: Mapping[str, int] | None = None) -> None:
        self._limits = dict(_DEFAULT_LIMITS)
        for name, limit in (overrides or {}).items():
            try:
                tier = PlanTier(name)
            except ValueError:
                raise ValueError(f"Unknown plan in limit overrides: {name!r}") from None
            if limit < 0:
                raise ValueError(f"Plan limit for {name!r} must be >= 0, got {limit}")
            self._limits[tier] = int(limit)

    def usage_limit(self, plan: PlanTier | str) -> int:
        """Return the per-period usage limit for *plan*."""
        return self._limits[PlanTier(plan)]

    def as_dict(self) -> dict[str, int]:
        return {tier.value: limit for tier, limit in self._limits.items()}


DEFAULT_CATALOG = PlanCatalog()
