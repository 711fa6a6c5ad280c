import os

import pytest

from rhythm.routine_source import CACHE_KEY, StaticRoutineSource, YamlRoutineSource

from conftest import make_routine

ROUTINES_YAML = """
routines:
  - id: morning-run
    name: Morning run
    description: Run a 5k before work
    start_time: "07:00"
    end_time: "07:45"
    days_of_week: [Mon, Wed, Fri]
    created_at: "2026-01-05T00:00:00"
"""


@pytest.fixture
def routines_file(tmp_path):
    path = tmp_path / "routines.yaml"
    path.write_text(ROUTINES_YAML)
    return path


def test_static_source_notifies_on_change():
    source = StaticRoutineSource([make_routine()])
    calls = []
    source.subscribe(lambda: calls.append(1))

    source.upsert(make_routine(id="read"))
    source.remove("walk")
    source.remove("walk")

    assert len(calls) == 2
    assert [r.id for r in source.list_routines()] == ["read"]


def test_yaml_source_loads_and_caches(routines_file, store):
    source = YamlRoutineSource(routines_file, store)

    routine = source.get("morning-run")
    assert routine.days_of_week == frozenset({"Mon", "Wed", "Fri"})
    assert routine.description == "Run a 5k before work"
    assert store.get(CACHE_KEY)[0]["id"] == "morning-run"


def test_broken_file_falls_back_to_cache(routines_file, store):
    YamlRoutineSource(routines_file, store)
    routines_file.write_text("routines: [this is: not valid")

    source = YamlRoutineSource(routines_file, store)

    assert [r.id for r in source.list_routines()] == ["morning-run"]


def test_missing_file_without_cache_is_empty(tmp_path, store):
    source = YamlRoutineSource(tmp_path / "absent.yaml", store)
    assert source.list_routines() == []


def test_change_detection(routines_file, store):
    source = YamlRoutineSource(routines_file, store)
    calls = []
    source.subscribe(lambda: calls.append(1))

    assert source.check_for_changes() is False

    routines_file.write_text(ROUTINES_YAML.replace("07:00", "06:30"))
    stat = routines_file.stat()
    os.utime(routines_file, (stat.st_atime, stat.st_mtime + 5))

    assert source.check_for_changes() is True
    assert calls == [1]
    assert source.get("morning-run").start_time == "06:30"
