"""Tests for fix plan task counting."""

from korero.autonomous.fix_plan import TaskSummary, load_tasks, parse_tasks


class TestParseTasks:
    def test_counts_checkboxes(self):
        summary = parse_tasks(
            "# Plan\n"
            "- [x] Done thing\n"
            "- [X] Also done\n"
            "* [ ] Open thing\n"
            "  - [ ] Nested open thing\n"
            "Not a task [ ]\n"
        )
        assert summary.total == 4
        assert summary.completed == 2
        assert summary.pending == 2
        assert summary.pending_tasks == ("Open thing", "Nested open thing")
        assert not summary.all_complete

    def test_all_complete(self):
        assert parse_tasks("- [x] one\n- [x] two\n").all_complete

    def test_no_tasks_is_not_complete(self):
        summary = parse_tasks("Just prose.\n")
        assert summary == TaskSummary()
        assert not summary.all_complete


class TestLoadTasks:
    def test_missing_plan(self, tmp_path):
        assert load_tasks(tmp_path / "fix_plan.md") is None

    def test_project_plan(self, config):
        summary = load_tasks(config.fix_plan_file)
        assert (summary.total, summary.completed) == (3, 1)
