from datetime import datetime, timedelta

from shipline.models import Revision, Run, RunStatus
from shipline.storage import InMemoryDB


class TestInMemoryDB:
    """Test run storage."""

    def setup_method(self):
        self.db = InMemoryDB()

    def test_create_and_get(self):
        run = self.db.create_run(Run(revision=Revision(id="abc123")))
        assert self.db.get_run(run.id) is run

    def test_get_unknown(self):
        assert self.db.get_run("missing") is None

    def test_update_run(self):
        run = self.db.create_run(Run(revision=Revision(id="abc123")))
        run.status = RunStatus.running
        assert self.db.update_run(run.id, run) is run
        assert self.db.get_run(run.id).status == RunStatus.running

    def test_update_unknown_run(self):
        run = Run(revision=Revision(id="abc123"))
        assert self.db.update_run(run.id, run) is None
        assert self.db.list_runs() == []

    def test_list_newest_revision_first(self):
        now = datetime.utcnow()
        old = self.db.create_run(Run(revision=Revision(id="aaa111", timestamp=now - timedelta(hours=1))))
        new = self.db.create_run(Run(revision=Revision(id="bbb222", timestamp=now)))
        assert [r.id for r in self.db.list_runs()] == [new.id, old.id]

    def test_list_filtered_by_revision(self):
        self.db.create_run(Run(revision=Revision(id="aaa111")))
        wanted = self.db.create_run(Run(revision=Revision(id="bbb222")))
        assert [r.id for r in self.db.list_runs("bbb222")] == [wanted.id]
