from datetime import datetime, timezone

import pytest

from circulation import database
from circulation.orchestrator import LifecycleOrchestrator

# Fixed clock shared by the tests; operations receive it through ``now=``.
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """Stands in for NotificationSender and keeps every notice it is handed."""

    def __init__(self):
        self.sent = []
        self.closed = False

    def notify(self, fact, recipient, book, **context):
        self.sent.append((fact, recipient, book, context))
        return None

    def close(self):
        self.closed = True

    def facts(self):
        return [fact for fact, _, _, _ in self.sent]


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    # Each test gets its own database file
    path = str(tmp_path / "circulation_test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    database.initialize_database()
    return path


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orch(db_file, notifier):
    return LifecycleOrchestrator(notifier=notifier)


@pytest.fixture
def librarian(orch):
    return orch.register_member("Lena Librarian", "lena@library.test", "librarian")


@pytest.fixture
def borrower(orch):
    return orch.register_member("Ada Borrower", "ada@library.test")


@pytest.fixture
def other_borrower(orch):
    return orch.register_member("Bo Borrower", "bo@library.test")


@pytest.fixture
def make_book(orch, librarian):
    def _make(copies=1, title="Dune"):
        return orch.add_book(title, copies, librarian)
    return _make


@pytest.fixture
def make_borrower(orch):
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        n = counter["n"]
        return orch.register_member(name or f"Reader {n}", f"reader{n}@library.test")
    return _make
