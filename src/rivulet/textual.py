"""Textual integration for rivulet. Opt-in, requires textual.

// [LAW:single-enforcer] Guard + NoMatches + thread-marshal enforced here, not at callsites.
// [LAW:locality-or-seam] Textual coupling isolated in this module; the core stays agnostic.
"""

import threading
from contextlib import contextmanager

from textual.css.query import NoMatches

# Keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend bound effects during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def bind(app, source, effect, on_error=None):
    """Subscribe ``effect`` to ``source`` so that it can touch widgets safely.

    Values arriving while the app is paused or not running are skipped,
    NoMatches from widget queries is ignored, and values set from another
    thread are marshalled through ``app.call_from_thread``.

    Usage:
        unbind = bind(app, todos.live(), lambda items: app.query_one("#count", Label).update(str(len(items))))
    """
    _main = threading.get_ident()

    def _guarded(value):
        if not is_safe(app):
            return
        if threading.get_ident() != _main:
            app.call_from_thread(_safe, value)
        else:
            _safe(value)

    def _safe(value):
        try:
            effect(value)
        except NoMatches:
            pass

    return source.subscribe(_guarded, on_error)
