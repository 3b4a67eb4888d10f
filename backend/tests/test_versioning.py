import pytest

import app.services.versioning as versioning
from app.core.errors import NotFoundError, StaleWriteError


class RacyTable:
    """Rows whose version moves under the writer ``losses`` times."""

    def __init__(self, row: dict, losses: int = 0):
        self.row = dict(row)
        self.losses = losses
        self.writes = 0

    def load_row(self, db, table, row_id):
        return dict(self.row) if self.row else None

    def write_if_version(self, db, table, row_id, version, changes):
        self.writes += 1
        if self.losses > 0:
            self.losses -= 1
            self.row["version"] += 1
            self.row["payment_failed_count"] += 1
            return False
        if version != self.row["version"]:
            return False
        self.row.update(changes)
        self.row["version"] += 1
        return True


def _install(monkeypatch, table: RacyTable):
    monkeypatch.setattr(versioning, "load_row", table.load_row)
    monkeypatch.setattr(versioning, "write_if_version", table.write_if_version)


def _bump(row):
    return {"payment_failed_count": row["payment_failed_count"] + 1}


def test_update_recomputes_from_fresh_snapshot(monkeypatch):
    table = RacyTable({"id": "s", "version": 1, "payment_failed_count": 0}, losses=1)
    _install(monkeypatch, table)

    snapshot, changes = versioning.update_versioned(None, "subscriptions", "s", _bump, attempts=3)

    # the concurrent writer's increment is kept, not overwritten
    assert changes == {"payment_failed_count": 2}
    assert snapshot["version"] == 2
    assert table.row["payment_failed_count"] == 2
    assert table.writes == 2


def test_update_gives_up_after_attempts(monkeypatch):
    table = RacyTable({"id": "s", "version": 1, "payment_failed_count": 0}, losses=5)
    _install(monkeypatch, table)

    with pytest.raises(StaleWriteError):
        versioning.update_versioned(None, "subscriptions", "s", _bump, attempts=3)
    assert table.writes == 3


def test_update_skips_write_when_nothing_changes(monkeypatch):
    table = RacyTable({"id": "s", "version": 4, "payment_failed_count": 0})
    _install(monkeypatch, table)

    snapshot, changes = versioning.update_versioned(None, "subscriptions", "s", lambda row: None)

    assert changes == {}
    assert snapshot["version"] == 4
    assert table.writes == 0


def test_update_missing_row(monkeypatch):
    table = RacyTable({})
    _install(monkeypatch, table)

    with pytest.raises(NotFoundError):
        versioning.update_versioned(None, "subscriptions", "missing", _bump)


def test_only_versioned_tables_are_accepted():
    with pytest.raises(ValueError):
        versioning.load_row(None, "users", "x")
    with pytest.raises(ValueError):
        versioning.write_if_version(None, "companies", "x", 1, {"name": "n"})
