from datetime import timedelta

import pytest

from agentdash.activity import (
    IDLE, SLEEPING, WORKING, activities_from_tasks, classify_staleness, get_agent_activities,
)
from agentdash.aggregator import aggregate, build_orchestration
from agentdash.models import Agent, Reservation, Task
from agentdash.sources import SourceUnavailable

from conftest import NOW, iso


def agent(name, last_active=None):
    return Agent(name=name, program="claude-code", model="sonnet-4.5",
                 last_active_ts=iso(last_active) if last_active else None)


def reservation(rid, agent_name, expires_in=timedelta(hours=1), released=False):
    return Reservation(id=rid, agent_name=agent_name, path_pattern="src/**",
                       created_ts=iso(NOW - timedelta(minutes=5)),
                       expires_ts=iso(NOW + expires_in),
                       released_ts=iso(NOW) if released else None)


def task(tid, status="open", priority=2, assignee=None, depends_on=(), blocked_by=()):
    return Task(id=tid, title=tid, status=status, priority=priority, assignee=assignee,
                depends_on=list(depends_on), blocked_by=list(blocked_by))


def by_name(result):
    return {a["name"]: a for a in result["agents"]}


def test_active_is_reservation_or_in_progress_task():
    agents = [agent("Tasker"), agent("Reserver"), agent("Idle")]
    result = aggregate(
        agents,
        [reservation(1, "Reserver")],
        [task("jat-1", status="in_progress", assignee="Tasker")],
        {}, NOW,
    )
    stats = by_name(result)
    assert stats["Tasker"]["active"] is True
    assert stats["Tasker"]["reservation_count"] == 0
    assert stats["Reserver"]["active"] is True
    assert stats["Reserver"]["task_count"] == 0
    assert stats["Idle"]["active"] is False


def test_expired_or_released_reservations_are_not_active():
    result = aggregate(
        [agent("A")],
        [reservation(1, "A", expires_in=timedelta(minutes=-1)),
         reservation(2, "A", released=True)],
        [task("jat-1", status="open", assignee="A")],
        {}, NOW,
    )
    a = by_name(result)["A"]
    assert a["active"] is False
    assert a["reservation_count"] == 2
    assert a["open_tasks"] == 1
    assert [r["active"] for r in result["reservations"]] == [False, False]
    assert len(result["reservations_by_agent"]["A"]) == 2


@pytest.mark.parametrize("age,tier", [
    (timedelta(minutes=5), WORKING),
    (timedelta(minutes=10), IDLE),
    (timedelta(minutes=30), IDLE),
    (timedelta(minutes=60), IDLE),
    (timedelta(minutes=61), SLEEPING),
    (timedelta(days=2), SLEEPING),
])
def test_staleness_tiers(age, tier):
    assert classify_staleness(NOW - age, NOW) == tier


def test_unknown_activity_is_sleeping():
    assert classify_staleness(None, NOW) == SLEEPING


def test_status_uses_latest_of_activity_and_last_active():
    activities = {"A": [{"agent": "A", "ts": iso(NOW - timedelta(minutes=2)), "preview": "x"}]}
    result = aggregate(
        [agent("A", last_active=NOW - timedelta(hours=3)), agent("B", NOW - timedelta(minutes=20))],
        [], [], activities, NOW,
    )
    stats = by_name(result)
    assert stats["A"]["status"] == WORKING
    assert stats["A"]["current_activity"]["preview"] == "x"
    assert stats["B"]["status"] == IDLE
    assert stats["B"]["current_activity"] is None
    assert result["agent_health"] == {"working": 1, "idle": 1, "sleeping": 0}


def test_task_history_feeds_agents_without_activity_log():
    tasks = [
        Task(id="jat-1", title="Ship it", status="in_progress", assignee="A",
             updated_at=iso(NOW - timedelta(minutes=3))),
        Task(id="jat-2", title="Older", status="closed", assignee="A",
             closed_at=iso(NOW - timedelta(hours=2))),
    ]
    logged = {"B": [{"agent": "B", "ts": iso(NOW - timedelta(minutes=1)), "preview": "log"}]}
    result = aggregate([agent("A", NOW - timedelta(days=1)), agent("B")], [], tasks, logged, NOW)
    stats = by_name(result)

    assert [a["taskId"] for a in stats["A"]["activities"]] == ["jat-1", "jat-2"]
    assert stats["A"]["current_activity"]["preview"] == "[jat-1] Ship it"
    assert stats["A"]["status"] == WORKING
    assert stats["B"]["current_activity"]["preview"] == "log"


def test_task_stats_partitions_sum_to_total():
    tasks = [
        task("jat-a", "open", 0), task("jat-b", "in_progress", 1), task("jat-c", "blocked", 4),
        task("jat-d", "closed", 2), task("jat-e", "open", 2), task("jat-f", "closed", 3),
    ]
    stats = aggregate([], [], tasks, {}, NOW)["task_stats"]

    assert stats["total"] == 6
    assert stats["open"] + stats["in_progress"] + stats["blocked"] + stats["closed"] == 6
    assert sum(stats["by_priority"].values()) == 6
    assert stats["by_priority"] == {"p0": 1, "p1": 1, "p2": 2, "p3": 1, "p4": 1}


def test_empty_task_stats_shape():
    stats = aggregate([], [], [], {}, NOW)["task_stats"]
    assert stats == {"total": 0, "open": 0, "in_progress": 0, "blocked": 0, "closed": 0,
                     "by_priority": {"p0": 0, "p1": 0, "p2": 0, "p3": 0, "p4": 0}}


def test_unassigned_requires_open_and_no_assignee():
    tasks = [
        task("jat-open"),
        task("jat-blocked", status="blocked"),
        task("jat-mine", assignee="A"),
        task("jat-closed", status="closed"),
    ]
    result = aggregate([], [], tasks, {}, NOW)
    assert [t["id"] for t in result["unassigned_tasks"]] == ["jat-open"]


def test_tasks_with_deps_is_union():
    tasks = [
        task("jat-1", depends_on=["jat-0"]),
        task("jat-2", blocked_by=["jat-1"]),
        task("jat-3", depends_on=["jat-1"], blocked_by=["jat-1"]),
        task("jat-4"),
    ]
    result = aggregate([], [], tasks, {}, NOW)
    assert result["tasks_with_deps_count"] == 3
    assert [t["id"] for t in result["tasks_with_deps"]] == ["jat-1", "jat-2", "jat-3"]


def test_task_list_is_capped_but_stats_are_not():
    tasks = [task(f"jat-{i}") for i in range(150)]
    result = aggregate([], [], tasks, {}, NOW)
    assert len(result["tasks"]) == 100
    assert result["task_stats"]["total"] == 150


def test_aggregate_is_deterministic():
    args = ([agent("B"), agent("A")], [reservation(2, "B"), reservation(1, "A")],
            [task("jat-1", assignee="A"), task("jat-2")], {}, NOW)
    assert aggregate(*args) == aggregate(*args)
    assert [a["name"] for a in aggregate(*args)["agents"]] == ["B", "A"]


class StubMail:
    def __init__(self, agents=(), reservations=(), fail=False):
        self.agents, self.reservations, self.fail = list(agents), list(reservations), fail

    def list_agents(self, project=None):
        if self.fail:
            raise SourceUnavailable("agent-mail", "database is locked")
        return self.agents

    def list_reservations(self, agent=None, project=None):
        if self.fail:
            raise SourceUnavailable("agent-mail", "database is locked")
        return [r for r in self.reservations if agent in (None, r.agent_name)]

    def thread_messages(self, thread_id):
        return []


class StubTasks:
    def __init__(self, tasks=(), fail_with=None):
        self.tasks, self.fail_with = list(tasks), fail_with

    def list_tasks(self, project=None):
        if self.fail_with:
            raise self.fail_with
        return self.tasks

    def assign_task(self, task_id, agent_name):
        raise NotImplementedError


def test_failed_mail_source_degrades_only_its_sections(tmp_path):
    result = build_orchestration(StubMail(fail=True), StubTasks([task("jat-1")]), tmp_path, now=NOW)

    assert result.data["agents"] == []
    assert result.data["reservations"] == []
    assert result.data["task_stats"]["total"] == 1
    assert {e["source"] for e in result.errors} == {"agent-mail"}
    assert len(result.errors) == 2


def test_partial_task_source_keeps_readable_tasks(tmp_path):
    failure = SourceUnavailable("beads", "broken: file is not a database", partial=[task("jat-1")])
    result = build_orchestration(StubMail([agent("A")]), StubTasks(fail_with=failure), tmp_path,
                                 now=NOW)

    assert [t["id"] for t in result.data["tasks"]] == ["jat-1"]
    assert result.errors == [{"source": "beads", "message": "broken: file is not a database"}]
    assert by_name(result.data)["A"]["active"] is False


def test_unexpected_reader_error_is_reported(tmp_path):
    result = build_orchestration(StubMail(), StubTasks(fail_with=RuntimeError("boom")), tmp_path,
                                 now=NOW)
    assert result.errors == [{"source": "tasks", "message": "boom"}]
    assert result.data["tasks"] == []


def test_reservation_filter_passed_through(tmp_path):
    mail = StubMail([agent("A"), agent("B")], [reservation(1, "A"), reservation(2, "B")])
    result = build_orchestration(mail, StubTasks(), tmp_path, agent="B", now=NOW)
    assert [r["agent_name"] for r in result.data["reservations"]] == ["B"]
    assert len(result.data["agents"]) == 2


def test_activity_logs_grouped_newest_first(project_root):
    claude_dir = project_root / ".claude"
    claude_dir.mkdir()
    lines = [
        '{"agent": "A", "ts": "2025-11-21T10:00:00Z", "preview": "old"}',
        "not json",
        '{"agent": "A", "ts": "2025-11-21T11:00:00Z", "preview": "new"}',
        '{"ts": "2025-11-21T11:00:00Z", "preview": "no agent"}',
        '{"agent": "B", "ts": "2025-11-21T09:00:00Z", "preview": "b"}',
    ]
    (claude_dir / "agent-A-activity.jsonl").write_text("\n".join(lines))
    many = "\n".join(f'{{"agent": "C", "ts": "2025-11-21T0{i}:00:00Z"}}' for i in range(9))
    (claude_dir / "agent-C-activity.jsonl").write_text(many)

    activities = get_agent_activities(project_root, limit=3)

    assert [a["preview"] for a in activities["A"]] == ["new", "old"]
    assert [a["preview"] for a in activities["B"]] == ["b"]
    assert [a["ts"] for a in activities["C"]] == [
        "2025-11-21T08:00:00Z", "2025-11-21T07:00:00Z", "2025-11-21T06:00:00Z"]


def test_activity_logs_missing_dir(tmp_path):
    assert get_agent_activities(tmp_path) == {}


def test_activities_from_tasks():
    tasks = [
        Task(id="jat-1", title="First", status="closed", assignee="A",
             updated_at="2025-11-20T10:00:00Z", closed_at="2025-11-21T09:00:00Z"),
        Task(id="jat-2", title="Second", status="in_progress", assignee="A",
             created_at="2025-11-21T08:00:00Z", updated_at="2025-11-21T11:00:00Z"),
        Task(id="jat-3", title="Other", status="open", assignee="B"),
    ]
    activities = activities_from_tasks("A", tasks)
    assert [a["taskId"] for a in activities] == ["jat-2", "jat-1"]
    assert activities[0]["preview"] == "[jat-2] Second"
    assert activities[1]["ts"] == "2025-11-21T09:00:00Z"


def test_activities_from_tasks_requires_agent():
    with pytest.raises(ValueError):
        activities_from_tasks("", [])
