"""Two-level (application / sub-entry) selection bookkeeping."""

from __future__ import annotations

from typing import Collection

from .models import SubEntryKey


class SelectionModel:
    """Tracks selected applications and sub-entries.

    Selecting an application seeds every one of its current sub-entries into
    the sub-entry set. A sub-entry deselected while its parent stays selected
    is remembered as an exclusion, so each sub-entry is effectively
    unset, selected or deselected.
    """

    def __init__(self) -> None:
        self._apps: set[int] = set()
        self._subs: set[SubEntryKey] = set()
        self._excluded: set[SubEntryKey] = set()
        self.active = False

    def toggle_application(self, app: int, sub_count: int) -> bool:
        """Flip ``app`` and cascade to its ``sub_count`` sub-entries. Returns the new state."""

        if app in self._apps:
            self._apps.discard(app)
            self._subs = {key for key in self._subs if key.app != app}
            self._excluded = {key for key in self._excluded if key.app != app}
            selected = False
        else:
            self._apps.add(app)
            self._subs.update(SubEntryKey(app, sub) for sub in range(sub_count))
            self._excluded = {key for key in self._excluded if key.app != app}
            selected = True
        self._refresh()
        return selected

    def toggle_sub_entry(self, app: int, sub: int) -> bool:
        key = SubEntryKey(app, sub)
        if self.is_sub_entry_selected(app, sub):
            self._subs.discard(key)
            if app in self._apps:
                self._excluded.add(key)
            selected = False
        else:
            self._subs.add(key)
            self._excluded.discard(key)
            selected = True
        self._refresh()
        return selected

    def clear(self) -> None:
        self._apps.clear()
        self._subs.clear()
        self._excluded.clear()
        self._refresh()

    def is_application_selected(self, app: int) -> bool:
        return app in self._apps

    def is_sub_entry_selected(self, app: int, sub: int) -> bool:
        key = SubEntryKey(app, sub)
        if key in self._excluded:
            return False
        return app in self._apps or key in self._subs

    def is_excluded(self, app: int, sub: int) -> bool:
        return SubEntryKey(app, sub) in self._excluded

    def counts(self) -> tuple[int, int]:
        """Return ``(selected applications, independently selected sub-entries)``."""

        independent = sum(1 for key in self._subs if key.app not in self._apps)
        return len(self._apps), independent

    def selected_applications(self) -> list[int]:
        return sorted(self._apps)

    def independent_sub_entries(self) -> list[SubEntryKey]:
        """Selected sub-entries whose application is not itself selected, in table order."""

        return sorted(key for key in self._subs if key.app not in self._apps)

    def count_hidden(self, hidden_apps: Collection[int]) -> int:
        """Count selected applications and sub-entry keys that belong to ``hidden_apps``."""

        apps = sum(1 for app in self._apps if app in hidden_apps)
        subs = sum(1 for key in self._subs if key.app in hidden_apps)
        return apps + subs

    def clear_hidden(self, hidden_apps: Collection[int]) -> None:
        self._apps = {app for app in self._apps if app not in hidden_apps}
        self._subs = {key for key in self._subs if key.app not in hidden_apps}
        self._excluded = {key for key in self._excluded if key.app not in hidden_apps}
        self._refresh()

    def _refresh(self) -> None:
        self.active = bool(self._apps or self._subs)
