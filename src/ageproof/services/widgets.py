"""Lookup of per-widget verification policy."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ageproof.models.policy import WidgetPolicy


class WidgetDirectory(ABC):
    @abstractmethod
    async def policy_for(self, widget_id: str) -> WidgetPolicy | None:
        """Policy for widget_id, or None if the widget is unknown."""
        ...


class StaticWidgetDirectory(WidgetDirectory):
    """Policies from configuration.

    With no explicit widgets configured every widget id gets the default
    policy; otherwise only listed widgets are known.
    """

    def __init__(
        self,
        policies: dict[str, WidgetPolicy] | None = None,
        default: WidgetPolicy | None = None,
    ) -> None:
        self._policies = dict(policies or {})
        self._default = default or WidgetPolicy()

    async def policy_for(self, widget_id: str) -> WidgetPolicy | None:
        if not widget_id:
            return None
        if not self._policies:
            return self._default
        return self._policies.get(widget_id)
