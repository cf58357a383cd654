#!/usr/bin/env python3
"""
Deployment utilities - shared helper functions.
"""

import sys
import threading

from ..executors.base import quote_path

_stage_local = threading.local()


def print_phase(phase_num, phase_name, stage=None):
    """Helper to print phase headers."""
    print(f"\n{'='*60}")
    if phase_num is None:
        print(phase_name if not stage else f"{phase_name} ({stage.upper()})")
    elif stage:
        print(f"PHASE {phase_num}: {phase_name} ({stage.upper()})")
    else:
        print(f"PHASE {phase_num}: {phase_name}")
    print(f"{'='*60}")


def confirm(prompt, assume_yes=False):
    """Ask a yes/no question on the terminal. Non-interactive sessions answer no."""
    if assume_yes:
        print(f"{prompt} [y/N] y (--yes)")
        return True
    if not sys.stdin.isatty():
        print(f"{prompt} [y/N] n (non-interactive)")
        return False
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ('y', 'yes')


def format_size(size):
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.0f} {unit}" if unit == 'B' else f"{size:.1f} {unit}"
        size /= 1024


def set_stage_prefix(stage):
    """Prefix every line this thread prints with [stage] (parallel runs)."""
    _stage_local.prefix = f"[{stage}] " if stage else ''


class StagePrefixedStream:
    """stdout wrapper that prefixes lines with the calling thread's stage."""

    def __init__(self, stream):
        self.stream = stream
        self._lock = threading.Lock()
        self._at_line_start = {}

    def write(self, text):
        prefix = getattr(_stage_local, 'prefix', '')
        if not prefix:
            return self.stream.write(text)

        ident = threading.get_ident()
        out = []
        with self._lock:
            at_start = self._at_line_start.get(ident, True)
            for line in text.splitlines(keepends=True):
                if at_start:
                    out.append(prefix)
                out.append(line)
                at_start = line.endswith('\n')
            self._at_line_start[ident] = at_start
            self.stream.write(''.join(out))
        return len(text)

    def flush(self):
        self.stream.flush()

    def __getattr__(self, name):
        return getattr(self.stream, name)
