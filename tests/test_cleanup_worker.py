import time

from edev.oauth.state import StateStore
from edev.session.store import SessionStore, User
from edev.workers.cleanup_worker import CleanupWorker


def test_tick_drops_expired_entries(monkeypatch):
    sessions = SessionStore(10)
    states = StateStore()
    sessions.put("a", User(id="1", login="a"))
    states.put("s", "v", 10)

    real = time.time
    monkeypatch.setattr(time, "time", lambda: real() + 60)
    sessions.put("b", User(id="2", login="b"))

    CleanupWorker(sessions, states, 300).tick()
    assert len(sessions) == 1
    assert sessions.get("b") is not None
    assert len(states) == 0


def test_start_stop():
    worker = CleanupWorker(SessionStore(), StateStore(), 1)
    worker.start()
    worker.stop()
    assert not worker._thread.is_alive()
