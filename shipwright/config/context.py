#!/usr/bin/env python3
"""
Per-run configuration context.

Replaces a global key/value registry: one ConfigContext is built for each
stage of each run and handed to every component. Stage values shadow global
values; callables are lazy values, resolved on first read and cached for the
lifetime of this context only.
"""

from .loader import deep_merge

_MISSING = object()


class ConfigContext:
    """Layered configuration for one stage of one deployment run."""

    def __init__(self, global_values, stage_values=None, stage=None):
        self.global_values = dict(global_values)
        self.stage_values = dict(stage_values or {})
        self.stage = stage
        self._resolved = {}

    def _lookup(self, key):
        if key in self.stage_values:
            return self.stage_values[key]
        if key in self.global_values:
            return self.global_values[key]
        return _MISSING

    def has(self, key):
        return self._lookup(key) is not _MISSING

    def get(self, key, default=None):
        if key in self._resolved:
            return self._resolved[key]

        value = self._lookup(key)
        if value is _MISSING:
            return default

        if callable(value):
            value = value(self)
            self._resolved[key] = value

        return value

    def set(self, key, value, scope='stage'):
        """Set a value (or a lazy callable) in the stage or global scope."""
        self._resolved.pop(key, None)
        if scope == 'global':
            self.global_values[key] = value
        else:
            self.stage_values[key] = value

    def section(self, name):
        """A config section with stage-level keys deep-merged over global ones."""
        base = self.global_values.get(name) or {}
        override = self.stage_values.get(name) or {}
        return deep_merge(base, override)

    def __repr__(self):
        return f"ConfigContext(stage={self.stage!r})"
