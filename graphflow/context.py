from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from .expressions import render_template, resolve_path


class ContextStore:
    """Mutable key/value view over one branch's slice of a run context.

    Node outputs are stored under the node id; trigger input is seeded at the
    top level.
    """

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(data or {}))

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def update(self, values: Mapping[str, Any]) -> None:
        self._data.update(values)

    def lookup(self, path: str) -> Any:
        return resolve_path(path, self._data)

    def render(self, template: str) -> str:
        return render_template(template, self._data)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def fork(self) -> ContextStore:
        return ContextStore(self._data)

    @classmethod
    def merged(cls, base: Mapping[str, Any], overlays: Iterable[Mapping[str, Any]]) -> ContextStore:
        """Overlay contexts in order; later overlays win on key conflicts."""
        store = cls(base)
        for overlay in overlays:
            store.update(copy.deepcopy(dict(overlay)))
        return store
